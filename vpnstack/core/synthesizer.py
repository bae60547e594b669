"""Artifact synthesis: parameters + secrets -> consistent configuration files.

Synthesis starts from fixed base documents and applies an ordered list of
transforms, one per feature flag:

1. ``apply_tls_method``  - ACME resolver in the topology, or a static
   default certificate in the TLS descriptor
2. ``apply_totp``        - forward-auth on the admin route and the matching
   access-control policy, edited together
3. ``apply_metrics``     - metrics environment and port on the tunnel service

Each transform is a pure function ``(Documents, StackParameters) -> Documents``.
The result is checked by ``verify_consistency`` before an ArtifactSet is
returned, so nothing inconsistent ever reaches the disk.
"""
import copy
import fnmatch
import re
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from vpnstack.core.errors import SynthesisError
from vpnstack.core.logger import get_logger
from vpnstack.models.artifacts import ArtifactSet, Documents
from vpnstack.models.parameters import StackParameters
from vpnstack.models.secrets import SecretMaterial

logger = get_logger(__name__)

# Images
TRAEFIK_IMAGE = "traefik:v3.2"
AUTHELIA_IMAGE = "authelia/authelia:4.39"
REDIS_IMAGE = "redis:7-alpine"
POSTGRES_IMAGE = "postgres:16-alpine"
WG_EASY_IMAGE = "ghcr.io/wg-easy/wg-easy:15"

# Routers and middleware
ADMIN_ROUTER = "wg-easy"
DASHBOARD_ROUTER = "traefik-dashboard"
AUTH_ROUTER = "authelia"
FORWARD_AUTH_MIDDLEWARE = "authelia@docker"
ADMIN_MIDDLEWARE_LABEL = f"traefik.http.routers.{ADMIN_ROUTER}.middlewares={FORWARD_AUTH_MIDDLEWARE}"

# Services by tier
DATA_TIER = ("postgres", "redis")
ADMIN_GROUP = "vpn-admins"

# Ports
WG_PORT = 51820
WG_UI_PORT = 51821
METRICS_PORT = 51822
AUTHELIA_PORT = 9091

ACME_RESOLVER = "letsencrypt"
ACME_STORAGE = "/certs/acme.json"
STATIC_CERT_FILE = "/certs/cert.pem"
STATIC_KEY_FILE = "/certs/key.pem"

CIPHER_SUITES = [
    "TLS_ECDHE_ECDSA_WITH_AES_256_GCM_SHA384",
    "TLS_ECDHE_RSA_WITH_AES_256_GCM_SHA384",
    "TLS_ECDHE_ECDSA_WITH_CHACHA20_POLY1305",
    "TLS_ECDHE_RSA_WITH_CHACHA20_POLY1305",
]

_HOST_RULE_RE = re.compile(r'Host\(`([^`]+)`\)')

Transform = Callable[[Documents, StackParameters], Documents]


# Base documents

def base_topology(params: StackParameters) -> Dict[str, Any]:
    """Service graph shared by every install, before feature deltas."""
    domain = params.domain
    return {
        'networks': {
            'proxy': {'name': 'proxy', 'driver': 'bridge'},
            'vpn_internal': {'name': 'vpn_internal', 'driver': 'bridge', 'internal': True},
        },
        'volumes': {
            'wg_data': {'name': 'wg_data'},
            'authelia_db': {'name': 'authelia_db'},
            'redis_data': {'name': 'redis_data'},
        },
        'services': {
            'traefik': {
                'image': TRAEFIK_IMAGE,
                'container_name': 'traefik',
                'restart': 'unless-stopped',
                'command': [
                    "--api.dashboard=true",
                    "--providers.docker=true",
                    "--providers.docker.exposedbydefault=false",
                    "--providers.docker.network=proxy",
                    "--providers.file.directory=/config",
                    "--providers.file.watch=true",
                    "--entrypoints.web.address=:80",
                    "--entrypoints.web.http.redirections.entrypoint.to=websecure",
                    "--entrypoints.web.http.redirections.entrypoint.scheme=https",
                    "--entrypoints.websecure.address=:443",
                    "--entrypoints.websecure.http.tls=true",
                    "--log.level=INFO",
                    "--accesslog=true",
                ],
                'ports': ["80:80", "443:443"],
                'volumes': [
                    "/var/run/docker.sock:/var/run/docker.sock:ro",
                    "./traefik/config:/config:ro",
                    "./traefik/certs:/certs",
                ],
                'networks': ['proxy'],
                'labels': [
                    "traefik.enable=true",
                    f"traefik.http.routers.{DASHBOARD_ROUTER}.rule=Host(`traefik.{domain}`)",
                    f"traefik.http.routers.{DASHBOARD_ROUTER}.entrypoints=websecure",
                    f"traefik.http.routers.{DASHBOARD_ROUTER}.service=api@internal",
                    f"traefik.http.routers.{DASHBOARD_ROUTER}.middlewares={FORWARD_AUTH_MIDDLEWARE}",
                    f"traefik.http.middlewares.authelia.forwardauth.address=http://authelia:{AUTHELIA_PORT}/api/authz/forward-auth",
                    "traefik.http.middlewares.authelia.forwardauth.trustForwardHeader=true",
                    "traefik.http.middlewares.authelia.forwardauth.authResponseHeaders=Remote-User,Remote-Groups,Remote-Name,Remote-Email",
                ],
            },
            'authelia': {
                'image': AUTHELIA_IMAGE,
                'container_name': 'authelia',
                'restart': 'unless-stopped',
                'depends_on': {
                    'postgres': {'condition': 'service_healthy'},
                    'redis': {'condition': 'service_started'},
                },
                'environment': [
                    f"TZ={params.timezone}",
                    "AUTHELIA_JWT_SECRET=${AUTHELIA_JWT_SECRET}",
                    "AUTHELIA_SESSION_SECRET=${AUTHELIA_SESSION_SECRET}",
                    "AUTHELIA_STORAGE_ENCRYPTION_KEY=${AUTHELIA_STORAGE_ENCRYPTION_KEY}",
                    "AUTHELIA_STORAGE_POSTGRES_PASSWORD=${POSTGRES_PASSWORD}",
                ],
                'volumes': ["./authelia/config:/config"],
                'networks': ['proxy', 'vpn_internal'],
                'expose': [str(AUTHELIA_PORT)],
                'labels': [
                    "traefik.enable=true",
                    f"traefik.http.routers.{AUTH_ROUTER}.rule=Host(`auth.{domain}`)",
                    f"traefik.http.routers.{AUTH_ROUTER}.entrypoints=websecure",
                    f"traefik.http.services.authelia.loadbalancer.server.port={AUTHELIA_PORT}",
                ],
            },
            'redis': {
                'image': REDIS_IMAGE,
                'container_name': 'authelia-redis',
                'restart': 'unless-stopped',
                # List form: compose splits a string command like a shell would,
                # and the password alphabet includes shell metacharacters
                'command': [
                    "redis-server",
                    "--requirepass", "${REDIS_PASSWORD}",
                    "--maxmemory", "128mb",
                    "--maxmemory-policy", "allkeys-lru",
                ],
                'volumes': ["redis_data:/data"],
                'networks': ['vpn_internal'],
                'expose': ["6379"],
            },
            'postgres': {
                'image': POSTGRES_IMAGE,
                'container_name': 'authelia-postgres',
                'restart': 'unless-stopped',
                'environment': [
                    "POSTGRES_DB=authelia",
                    "POSTGRES_USER=authelia",
                    "POSTGRES_PASSWORD=${POSTGRES_PASSWORD}",
                ],
                'volumes': ["authelia_db:/var/lib/postgresql/data"],
                'networks': ['vpn_internal'],
                'expose': ["5432"],
                'healthcheck': {
                    'test': ["CMD-SHELL", "pg_isready -U authelia"],
                    'interval': '10s',
                    'timeout': '5s',
                    'retries': 5,
                },
            },
            'wg-easy': {
                'image': WG_EASY_IMAGE,
                'container_name': 'wg-easy',
                'restart': 'unless-stopped',
                'depends_on': ['traefik', 'authelia'],
                'environment': [
                    "LANG=en",
                    f"WG_HOST={params.vpn_host}",
                    f"WG_PORT={WG_PORT}",
                    f"PORT={WG_UI_PORT}",
                    f"WG_DEFAULT_DNS={','.join(params.wg_dns)}",
                    f"WG_ALLOWED_IPS={','.join(params.wg_allowed_ips)}",
                    "WG_DEFAULT_ADDRESS=10.8.0.x",
                    "WG_PERSISTENT_KEEPALIVE=25",
                    "UI_TRAFFIC_STATS=true",
                    "UI_CHART_TYPE=1",
                    "INSECURE=false",
                ],
                'volumes': [
                    "wg_data:/etc/wireguard",
                    "/lib/modules:/lib/modules:ro",
                ],
                'cap_add': ['NET_ADMIN', 'SYS_MODULE'],
                'sysctls': [
                    "net.ipv4.ip_forward=1",
                    "net.ipv4.conf.all.src_valid_mark=1",
                    "net.ipv6.conf.all.disable_ipv6=0",
                    "net.ipv6.conf.all.forwarding=1",
                ],
                'networks': ['proxy'],
                'ports': [f"{WG_PORT}:{WG_PORT}/udp"],
                'expose': [str(WG_UI_PORT)],
                'labels': [
                    "traefik.enable=true",
                    f"traefik.http.routers.{ADMIN_ROUTER}.rule=Host(`vpn.{domain}`)",
                    f"traefik.http.routers.{ADMIN_ROUTER}.entrypoints=websecure",
                    f"traefik.http.services.wg-easy.loadbalancer.server.port={WG_UI_PORT}",
                ],
            },
        },
    }


def base_auth_policy(params: StackParameters, secrets: SecretMaterial) -> Dict[str, Any]:
    """Authelia configuration with protected rules still at deny."""
    domain = params.domain
    return {
        'server': {'address': f"tcp://0.0.0.0:{AUTHELIA_PORT}/"},
        'log': {'level': 'info'},
        'totp': {'issuer': domain, 'period': 30, 'skew': 1},
        'authentication_backend': {
            'file': {
                'path': '/config/users_database.yml',
                'password': {
                    'algorithm': 'argon2',
                    'argon2': {
                        'variant': 'argon2id',
                        'iterations': 3,
                        'memory': 65536,
                        'parallelism': 4,
                    },
                },
            },
        },
        'access_control': {
            'default_policy': 'deny',
            'rules': [
                {'domain': params.auth_hostname, 'policy': 'bypass'},
                {'domain': [params.vpn_hostname, params.dashboard_hostname], 'policy': 'deny'},
            ],
        },
        'session': {
            'name': 'authelia_session',
            'expiration': 3600,
            'inactivity': 300,
            'remember_me': '1M',
            'cookies': [
                {'domain': domain, 'authelia_url': f"https://{params.auth_hostname}"},
            ],
            'redis': {
                'host': 'authelia-redis',
                'port': 6379,
                'password': secrets.redis_password,
            },
        },
        'regulation': {'max_retries': 5, 'find_time': '2m', 'ban_time': '10m'},
        'storage': {
            'postgres': {
                'address': 'tcp://authelia-postgres:5432',
                'database': 'authelia',
                'username': 'authelia',
            },
        },
        'notifier': {'filesystem': {'filename': '/config/notifications.txt'}},
    }


def base_tls() -> Dict[str, Any]:
    return {
        'tls': {
            'options': {
                'default': {
                    'minVersion': 'VersionTLS12',
                    'cipherSuites': list(CIPHER_SUITES),
                },
            },
        },
    }


def base_credentials(params: StackParameters, secrets: SecretMaterial) -> Dict[str, Any]:
    return {
        'users': {
            params.admin_username: admin_entry(params, secrets),
        },
    }


def admin_entry(params: StackParameters, secrets: SecretMaterial) -> Dict[str, Any]:
    return {
        'disabled': False,
        'displayname': "VPN Admin",
        'password': secrets.admin_password_hash,
        'email': params.admin_email,
        'groups': [ADMIN_GROUP],
    }


# Transforms

def apply_tls_method(docs: Documents, params: StackParameters) -> Documents:
    """Select automated issuance or a static certificate, never both."""
    if params.tls_method == 'letsencrypt':
        if not params.acme_email or not params.acme_email.strip():
            raise SynthesisError("TLS method 'letsencrypt' requires a non-empty ACME email")

        topology = copy.deepcopy(docs.topology)
        command = topology['services']['traefik']['command']
        insert_at = command.index("--entrypoints.websecure.http.tls=true") + 1
        command[insert_at:insert_at] = acme_flags(params.acme_email)
        return replace(docs, topology=topology)

    if params.tls_method == 'selfsigned':
        tls = copy.deepcopy(docs.tls)
        tls['tls'] = {
            'stores': {
                'default': {
                    'defaultCertificate': {
                        'certFile': STATIC_CERT_FILE,
                        'keyFile': STATIC_KEY_FILE,
                    },
                },
            },
            **tls['tls'],
        }
        return replace(docs, tls=tls)

    raise SynthesisError(f"Unknown TLS method: {params.tls_method}")


def acme_flags(email: str) -> List[str]:
    return [
        f"--entrypoints.websecure.http.tls.certresolver={ACME_RESOLVER}",
        f"--certificatesresolvers.{ACME_RESOLVER}.acme.email={email}",
        f"--certificatesresolvers.{ACME_RESOLVER}.acme.storage={ACME_STORAGE}",
        f"--certificatesresolvers.{ACME_RESOLVER}.acme.httpchallenge.entrypoint=web",
    ]


def apply_totp(docs: Documents, params: StackParameters) -> Documents:
    """Edit the admin route and its access-control rule as one delta."""
    topology = copy.deepcopy(docs.topology)
    auth_policy = copy.deepcopy(docs.auth_policy)

    labels = topology['services']['wg-easy']['labels']
    labels[:] = [label for label in labels if not _is_middleware_label(label, ADMIN_ROUTER)]

    if params.enable_totp:
        entrypoint_label = f"traefik.http.routers.{ADMIN_ROUTER}.entrypoints=websecure"
        labels.insert(labels.index(entrypoint_label) + 1, ADMIN_MIDDLEWARE_LABEL)
        admin_policy = dashboard_policy = 'two_factor'
    else:
        admin_policy = params.single_factor_policy
        # The dashboard is always behind forward-auth, so never bypass it
        dashboard_policy = 'one_factor'

    rules = [
        rule for rule in auth_policy['access_control']['rules']
        if not set(_rule_domains(rule)) & {params.vpn_hostname, params.dashboard_hostname}
    ]
    if admin_policy == dashboard_policy:
        rules.append({
            'domain': [params.vpn_hostname, params.dashboard_hostname],
            'policy': admin_policy,
        })
    else:
        rules.append({'domain': params.vpn_hostname, 'policy': admin_policy})
        rules.append({'domain': params.dashboard_hostname, 'policy': dashboard_policy})
    auth_policy['access_control']['rules'] = rules

    return replace(docs, topology=topology, auth_policy=auth_policy)


def apply_metrics(docs: Documents, params: StackParameters) -> Documents:
    """Add the Prometheus metrics block to the tunnel service when enabled."""
    if not params.enable_metrics:
        return docs

    topology = copy.deepcopy(docs.topology)
    wg = topology['services']['wg-easy']
    wg['environment'].extend([
        "METRICS_ENABLED=true",
        f"METRICS_PORT={METRICS_PORT}",
    ])
    wg['expose'].append(str(METRICS_PORT))
    return replace(docs, topology=topology)


TRANSFORMS: Tuple[Transform, ...] = (
    apply_tls_method,
    apply_totp,
    apply_metrics,
)


# Inspection helpers

def _is_middleware_label(label: str, router: str) -> bool:
    return label.startswith(f"traefik.http.routers.{router}.middlewares=")


def _rule_domains(rule: Dict[str, Any]) -> List[str]:
    domains = rule.get('domain', [])
    if isinstance(domains, str):
        return [domains]
    return list(domains)


def iter_labels(topology: Dict[str, Any]):
    for service in topology.get('services', {}).values():
        for label in service.get('labels', []):
            yield label


def routed_hostnames(topology: Dict[str, Any]) -> List[str]:
    """Every hostname a router in the topology matches, in label order."""
    hosts: List[str] = []
    for label in iter_labels(topology):
        key, _, value = label.partition('=')
        if key.startswith('traefik.http.routers.') and key.endswith('.rule'):
            for host in _HOST_RULE_RE.findall(value):
                if host not in hosts:
                    hosts.append(host)
    return hosts


def router_middlewares(topology: Dict[str, Any], router: str) -> List[str]:
    """Middlewares attached to a router through its labels."""
    middlewares: List[str] = []
    for label in iter_labels(topology):
        if _is_middleware_label(label, router):
            value = label.partition('=')[2]
            middlewares.extend(m.strip() for m in value.split(',') if m.strip())
    return middlewares


def has_forward_auth(topology: Dict[str, Any], router: str = ADMIN_ROUTER) -> bool:
    return FORWARD_AUTH_MIDDLEWARE in router_middlewares(topology, router)


def _specificity(pattern: str, hostname: str) -> Optional[int]:
    """Rank how specifically a rule domain matches a hostname (None = no match)."""
    if pattern == hostname:
        return 1000
    if '*' in pattern and fnmatch.fnmatchcase(hostname, pattern):
        return pattern.count('.')
    return None


def applicable_rules(auth_policy: Dict[str, Any], hostname: str) -> List[Dict[str, Any]]:
    """Rules that match a hostname at the highest specificity present."""
    best: Optional[int] = None
    matches: List[Dict[str, Any]] = []
    for rule in auth_policy.get('access_control', {}).get('rules', []):
        scores = [s for s in (_specificity(d, hostname) for d in _rule_domains(rule)) if s is not None]
        if not scores:
            continue
        score = max(scores)
        if best is None or score > best:
            best, matches = score, [rule]
        elif score == best:
            matches.append(rule)
    return matches


def policy_for(auth_policy: Dict[str, Any], hostname: str) -> str:
    """Resolve the effective policy for a hostname (most specific rule wins)."""
    rules = applicable_rules(auth_policy, hostname)
    if rules:
        return rules[0]['policy']
    return auth_policy.get('access_control', {}).get('default_policy', 'deny')


def acme_enabled(topology: Dict[str, Any]) -> bool:
    command = topology['services']['traefik'].get('command', [])
    return any(flag.startswith(f"--certificatesresolvers.{ACME_RESOLVER}.acme.") for flag in command)


def static_certificate_enabled(tls: Dict[str, Any]) -> bool:
    return 'defaultCertificate' in tls.get('tls', {}).get('stores', {}).get('default', {})


def verify_consistency(docs: Documents, params: StackParameters) -> None:
    """Check every cross-artifact invariant.

    Raises:
        SynthesisError: Describing every violated invariant
    """
    problems: List[str] = []
    topology, auth_policy = docs.topology, docs.auth_policy

    if auth_policy['access_control'].get('default_policy') != 'deny':
        problems.append("access control default policy must be deny")

    for hostname in routed_hostnames(topology):
        rules = applicable_rules(auth_policy, hostname)
        if not rules:
            problems.append(f"routed hostname {hostname} has no access-control rule")
        elif len(rules) > 1:
            problems.append(f"routed hostname {hostname} matches {len(rules)} conflicting rules")

    forward_auth = has_forward_auth(topology)
    two_factor = policy_for(auth_policy, params.vpn_hostname) == 'two_factor'
    if not (params.enable_totp == forward_auth == two_factor):
        problems.append(
            f"TOTP={params.enable_totp} but admin forward-auth={forward_auth} "
            f"and {params.vpn_hostname} two_factor={two_factor}"
        )

    acme, static = acme_enabled(topology), static_certificate_enabled(docs.tls)
    if acme == static:
        problems.append("exactly one of ACME issuance or a static certificate must be configured")
    elif acme != (params.tls_method == 'letsencrypt'):
        problems.append(f"certificate source does not match TLS method {params.tls_method}")

    for name in DATA_TIER:
        service = topology['services'][name]
        if service.get('ports'):
            problems.append(f"data-tier service {name} must not publish host ports")
        if service.get('networks') != ['vpn_internal']:
            problems.append(f"data-tier service {name} must only join vpn_internal")

    if problems:
        raise SynthesisError("Inconsistent artifacts:\n  " + "\n  ".join(problems))


def synthesize(
    params: StackParameters,
    secrets: SecretMaterial,
    transforms: Sequence[Transform] = TRANSFORMS,
) -> ArtifactSet:
    """Build the artifact set for a parameter model and its secrets.

    Pure: the same inputs always produce byte-identical artifacts.

    Raises:
        SynthesisError: If the flags cannot be satisfied or the result is
            inconsistent
    """
    docs = Documents(
        topology=base_topology(params),
        auth_policy=base_auth_policy(params, secrets),
        tls=base_tls(),
        credentials=base_credentials(params, secrets),
    )
    for transform in transforms:
        docs = transform(docs, params)

    verify_consistency(docs, params)
    logger.debug(
        f"Synthesized artifacts (TLS: {params.tls_method}, TOTP: {params.enable_totp}, "
        f"metrics: {params.enable_metrics})"
    )
    return ArtifactSet.from_documents(docs)
