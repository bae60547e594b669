"""Synthesized configuration artifacts."""
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, Tuple

import yaml

TOPOLOGY = "topology"
AUTH_POLICY = "auth_policy"
TLS = "tls"
CREDENTIALS = "credentials"

# Artifact name -> (path relative to the install dir, file mode)
ARTIFACT_PATHS: Dict[str, Tuple[str, int]] = {
    TOPOLOGY: ("docker-compose.yml", 0o644),
    AUTH_POLICY: ("authelia/config/configuration.yml", 0o600),
    TLS: ("traefik/config/tls.yml", 0o644),
    CREDENTIALS: ("authelia/config/users_database.yml", 0o600),
}

_HEADERS = {
    TOPOLOGY: "# Generated by vpnstack. Re-run 'vpnstack install' instead of editing.\n",
    AUTH_POLICY: "---\n",
    TLS: "",
    CREDENTIALS: (
        "---\n"
        "# Authelia user database, hot-reloaded, no restart needed\n"
        "# Manage users with:  vpnstack add-user <name> <email> <pass> vpn-admins\n"
    ),
}


def render_yaml(document: Dict[str, Any]) -> str:
    """Render a document as YAML with stable key order."""
    return yaml.safe_dump(
        document,
        default_flow_style=False,
        sort_keys=False,
        allow_unicode=True,
        width=4096,
    )


def render_artifact(name: str, document: Dict[str, Any]) -> str:
    """Render one artifact document with its file header."""
    return _HEADERS[name] + render_yaml(document)


@dataclass(frozen=True)
class Documents:
    """Structured artifact documents flowing through the transform pipeline.

    Transforms never mutate a Documents value; they return a new one.
    """

    topology: Dict[str, Any]
    auth_policy: Dict[str, Any]
    tls: Dict[str, Any]
    credentials: Dict[str, Any]

    def get(self, name: str) -> Dict[str, Any]:
        return getattr(self, name)


@dataclass(frozen=True)
class Artifact:
    """One rendered configuration file."""

    name: str
    path: str
    content: str
    mode: int


@dataclass(frozen=True)
class ArtifactSet:
    """The complete, consistent set of generated configuration files."""

    documents: Documents
    artifacts: Tuple[Artifact, ...] = field(default=())

    @classmethod
    def from_documents(cls, documents: Documents) -> 'ArtifactSet':
        artifacts = []
        for name, (path, mode) in ARTIFACT_PATHS.items():
            content = render_artifact(name, documents.get(name))
            artifacts.append(Artifact(name=name, path=path, content=content, mode=mode))
        return cls(documents=documents, artifacts=tuple(artifacts))

    def __getitem__(self, name: str) -> Artifact:
        for artifact in self.artifacts:
            if artifact.name == name:
                return artifact
        raise KeyError(name)

    def __iter__(self) -> Iterator[Artifact]:
        return iter(self.artifacts)

    @property
    def topology(self) -> Dict[str, Any]:
        return self.documents.topology

    @property
    def auth_policy(self) -> Dict[str, Any]:
        return self.documents.auth_policy

    @property
    def tls(self) -> Dict[str, Any]:
        return self.documents.tls

    @property
    def credentials(self) -> Dict[str, Any]:
        return self.documents.credentials
