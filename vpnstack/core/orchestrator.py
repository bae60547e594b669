"""Lifecycle orchestration for one install directory.

State machine:

    UNINITIALIZED -> PREPARED -> SECRETS_BOUND -> STARTED -> {HEALTHY, DEGRADED}

``prepare()`` walks the first two transitions (directory layout, then secret
binding and artifact writes). Secret binding is the only way to reach
SECRETS_BOUND, and ``start()`` refuses to run before it, so services never
come up against missing or regenerated secrets.
"""
import copy
import math
import time
import warnings
from typing import Callable, Dict, List, Optional, Tuple

from vpnstack.core.config import StackSettings, get_settings
from vpnstack.core.credentials import CredentialStore
from vpnstack.core.errors import HealthTimeoutWarning, LifecycleError, SecretIntegrityError
from vpnstack.core.layout import InstallLayout, atomic_write
from vpnstack.core.logger import get_logger
from vpnstack.core.preflight import PreflightReport, run_preflight
from vpnstack.core.secret_store import SecretStore
from vpnstack.core.synthesizer import synthesize
from vpnstack.models.artifacts import CREDENTIALS, ArtifactSet
from vpnstack.models.lifecycle import HealthReport, StackState
from vpnstack.models.parameters import StackParameters
from vpnstack.models.secrets import SecretMaterial
from vpnstack.services.certificates import CertificateProvisioner
from vpnstack.services.docker_compose import ComposeRunner
from vpnstack.services.firewall import FirewallConfigurator

logger = get_logger(__name__)

# Data tier first: authelia blocks on postgres at startup, and wg-easy
# depends on the proxy and authentication service.
START_TIERS: Tuple[Tuple[str, ...], ...] = (
    ("postgres", "redis"),
    ("authelia", "traefik"),
    ("wg-easy",),
)
HEALTH_CONTAINER = "authelia-postgres"
CONTAINERS = ("traefik", "authelia", "authelia-redis", "authelia-postgres", "wg-easy")

_ALLOWED: Dict[StackState, Tuple[StackState, ...]] = {
    StackState.PREPARED: tuple(StackState),
    StackState.SECRETS_BOUND: tuple(StackState),
    StackState.STARTED: (
        StackState.SECRETS_BOUND,
        StackState.STARTED,
        StackState.HEALTHY,
        StackState.DEGRADED,
    ),
    StackState.HEALTHY: (StackState.STARTED, StackState.HEALTHY, StackState.DEGRADED),
    StackState.DEGRADED: (StackState.STARTED, StackState.HEALTHY, StackState.DEGRADED),
}


class LifecycleOrchestrator:
    """Turns parameters into a running, health-checked stack."""

    def __init__(
        self,
        layout: InstallLayout,
        params: Optional[StackParameters] = None,
        runner: Optional[ComposeRunner] = None,
        hasher: Optional[Callable[[str], str]] = None,
        settings: Optional[StackSettings] = None,
        mock: bool = False,
        certificates: Optional[CertificateProvisioner] = None,
        firewall: Optional[FirewallConfigurator] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.layout = layout
        self.params = params
        self.settings = settings or get_settings()
        self.mock = mock
        self.runner = runner or ComposeRunner(layout.root, mock=mock, settings=self.settings)
        self.secret_store = SecretStore(layout, hasher=hasher)
        self.certificates = certificates or CertificateProvisioner(layout.certs_dir, mock=mock)
        self.firewall = firewall or FirewallConfigurator(mock=mock)
        self.secrets: Optional[SecretMaterial] = None
        self.artifacts: Optional[ArtifactSet] = None
        self._sleep = sleep
        self._clock = clock
        self._state = StackState.detect(layout)

    @property
    def state(self) -> StackState:
        return self._state

    def _transition(self, target: StackState) -> None:
        allowed = _ALLOWED.get(target, ())
        if self._state not in allowed:
            raise LifecycleError(
                f"Cannot move from {self._state.value} to {target.value}"
            )
        logger.debug(f"State: {self._state.value} -> {target.value}")
        self._state = target

    def _require_params(self) -> StackParameters:
        if self.params is None:
            raise LifecycleError("This operation needs deployment parameters (--config)")
        return self.params

    # Install

    def preflight(self, require_root: bool = True) -> PreflightReport:
        """Abort on an unsupported host before anything is written."""
        return run_preflight(
            self.runner,
            self.settings.min_docker_major,
            require_superuser=require_root,
        )

    def prepare(self) -> ArtifactSet:
        """Create the layout, bind secrets and (re)write every artifact.

        Safe to re-run: artifacts are regenerated from the current
        parameters, secrets are loaded rather than regenerated.
        """
        params = self._require_params()

        # Unsatisfiable flags fail here, before the first write
        synthesize(params, SecretMaterial.placeholder())

        for directory in self.layout.directories():
            directory.mkdir(parents=True, exist_ok=True)
        self.layout.root.chmod(0o750)
        if self._state == StackState.UNINITIALIZED:
            self._transition(StackState.PREPARED)
        logger.info(f"✓ Directory layout ready at {self.layout.root}")

        self.bind_secrets()

        self.artifacts = synthesize(self.params, self.secrets)
        self.write_artifacts(self.artifacts)

        self.certificates.ensure_acme_storage()
        if params.tls_method == 'selfsigned':
            self.certificates.ensure_self_signed(params.domain)
        else:
            logger.info("acme.json ready. Let's Encrypt will issue certs on first startup")

        return self.artifacts

    def bind_secrets(self) -> SecretMaterial:
        """PREPARED -> SECRETS_BOUND: load or create the install's secrets."""
        params = self._require_params()
        if self._state == StackState.UNINITIALIZED:
            raise LifecycleError("Install directory not prepared; run prepare() first")

        self.secrets = self.secret_store.ensure(params)
        # The plaintext password is no longer needed once a hash exists
        self.params = params.without_password()
        self._transition(StackState.SECRETS_BOUND)
        return self.secrets

    def load_secrets(self) -> SecretMaterial:
        """Bind the secrets of an already initialized install."""
        if not self.secret_store.exists():
            raise SecretIntegrityError(f"No secret file at {self.secret_store.path}; run install first")
        self.secrets = self.secret_store.load()
        return self.secrets

    def write_artifacts(self, artifacts: ArtifactSet) -> None:
        """Atomically write each artifact with its mode.

        Users added after install are kept in the credential store; the
        admin entry always comes from the synthesized artifact.
        """
        for artifact in artifacts:
            path = self.layout.resolve(artifact.path)
            if artifact.name == CREDENTIALS:
                store = CredentialStore(path)
                store.users = copy.deepcopy(artifacts.credentials['users'])
                kept = store.merge_missing(CredentialStore.load(path))
                store.save()
                if kept:
                    logger.info(f"Kept {kept} existing user(s) in {path.name}")
            else:
                atomic_write(path, artifact.content, mode=artifact.mode)
            logger.info(f"✓ {artifact.path} generated")

    def configure_firewall(self) -> Optional[str]:
        params = self._require_params()
        if not params.setup_firewall:
            logger.info("Firewall configuration skipped")
            return None
        return self.firewall.configure()

    # Running stack

    def start(self, pull: bool = True) -> None:
        """Bring services up tier by tier."""
        if self._state not in _ALLOWED[StackState.STARTED]:
            raise LifecycleError(
                f"Cannot start from state {self._state.value}; secrets are not bound yet"
            )
        if pull:
            self.runner.pull()
        for tier in START_TIERS:
            logger.info(f"Starting {', '.join(tier)}...")
            self.runner.up(list(tier))
        self._transition(StackState.STARTED)
        logger.info("✓ All containers started")

    def await_healthy(
        self,
        timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
    ) -> HealthReport:
        """Poll the data tier until healthy or the timeout elapses.

        Never raises on timeout: a degraded stack is a reportable end state.
        """
        timeout = self.settings.health_timeout if timeout is None else timeout
        poll_interval = self.settings.health_interval if poll_interval is None else poll_interval
        max_attempts = max(1, math.ceil(timeout / poll_interval)) + 1 if poll_interval > 0 else 1

        started = self._clock()
        status = "unknown"
        attempts = 0
        elapsed = 0.0
        while attempts < max_attempts:
            attempts += 1
            status = self.runner.container_status(HEALTH_CONTAINER)
            elapsed = self._clock() - started
            if status == "healthy":
                logger.info(f"✓ Services healthy ({elapsed:.0f}s elapsed)")
                return self._health(StackState.HEALTHY, elapsed, status, attempts)
            if elapsed >= timeout or attempts >= max_attempts:
                break
            logger.info(f"Waiting... {elapsed:.0f}/{timeout:.0f}s (postgres: {status})")
            self._sleep(min(poll_interval, max(timeout - elapsed, 0)))

        message = (
            f"Timed out after {elapsed:.0f}s: services may still be starting "
            f"(postgres: {status}). Check: vpnstack status"
        )
        logger.warning(message)
        warnings.warn(message, HealthTimeoutWarning, stacklevel=2)
        return self._health(StackState.DEGRADED, elapsed, status, attempts)

    def _health(self, state: StackState, elapsed: float, status: str, attempts: int) -> HealthReport:
        if self._state.is_running:
            self._transition(state)
        return HealthReport(
            state=state,
            elapsed=elapsed,
            status=status,
            attempts=attempts,
            container=HEALTH_CONTAINER,
        )

    def stop(self) -> None:
        self.runner.down()
        if self._state.is_running:
            self._state = StackState.SECRETS_BOUND
        logger.info("✓ Stack stopped")

    def restart(self) -> None:
        self.runner.down()
        if self._state.is_running:
            self._state = StackState.SECRETS_BOUND
        self.start(pull=False)

    def update(self) -> None:
        """Pull the latest images and recreate changed containers."""
        self.runner.pull()
        self.runner.up()
        if self._state in _ALLOWED[StackState.STARTED]:
            self._transition(StackState.STARTED)
        logger.info("✓ Stack updated")

    def status(self) -> List[Tuple[str, str]]:
        """Health (or run state) of every stack container."""
        return [(name, self.runner.container_status(name)) for name in CONTAINERS]

    def logs(self, service: Optional[str] = None, follow: bool = True) -> None:
        self.runner.logs(service, follow=follow)

    def install(self, require_root: bool = True) -> HealthReport:
        """Full first-run flow: checks, prepare, firewall, start, health."""
        self.preflight(require_root=require_root)
        self.prepare()
        self.configure_firewall()
        self.start()
        return self.await_healthy()
