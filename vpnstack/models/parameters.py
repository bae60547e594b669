"""Deployment parameters collected from the operator."""
import ipaddress
import re
from typing import Any, List, Literal, Mapping, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    ValidationError,
    field_validator,
    model_validator,
)

from vpnstack.core.errors import ParameterValidationError

MIN_PASSWORD_LENGTH = 12

DEFAULT_WG_DNS = ["1.1.1.1", "8.8.8.8"]
DEFAULT_WG_ALLOWED_IPS = ["0.0.0.0/0"]

_USERNAME_RE = re.compile(r'^[A-Za-z0-9._-]+$')
_HOSTNAME_RE = re.compile(
    r'^(?=.{1,253}$)([A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?)'
    r'(\.[A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?)*$'
)


def _split_list(value: Any) -> Any:
    """Accept comma-separated strings wherever a list is expected."""
    if isinstance(value, str):
        return [item.strip() for item in value.split(',') if item.strip()]
    return value


class StackParameters(BaseModel):
    """Immutable record of every operator choice.

    One instance is threaded explicitly through secret generation,
    synthesis and the lifecycle orchestrator.
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    domain: str = Field(..., description="Base domain; vpn., auth. and traefik. are created under it")
    vpn_host: str = Field(..., description="Public IP or hostname WireGuard clients connect to")
    timezone: str = "UTC"

    admin_username: str = "admin"
    admin_email: Optional[str] = None
    admin_password: Optional[SecretStr] = None

    enable_totp: bool = True
    single_factor_policy: Literal["one_factor", "bypass"] = "one_factor"

    tls_method: Literal["letsencrypt", "selfsigned"] = "letsencrypt"
    acme_email: Optional[str] = None

    wg_dns: List[str] = Field(default_factory=lambda: list(DEFAULT_WG_DNS))
    wg_allowed_ips: List[str] = Field(default_factory=lambda: list(DEFAULT_WG_ALLOWED_IPS))

    setup_firewall: bool = True
    enable_metrics: bool = False

    @field_validator('domain')
    @classmethod
    def validate_domain(cls, v: str) -> str:
        v = v.strip().lower().rstrip('.')
        if not v:
            raise ValueError("Domain is required")
        if '://' in v or '/' in v:
            raise ValueError(f"Domain must be a bare hostname, got: {v}")
        if not _HOSTNAME_RE.match(v):
            raise ValueError(f"Domain '{v}' is not a valid hostname")
        return v

    @field_validator('vpn_host')
    @classmethod
    def validate_vpn_host(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("VPN host is required")
        try:
            ipaddress.ip_address(v)
            return v
        except ValueError:
            pass
        if not _HOSTNAME_RE.match(v):
            raise ValueError(f"VPN host '{v}' is neither an IP address nor a hostname")
        return v

    @field_validator('timezone')
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Timezone cannot be empty")
        return v

    @field_validator('admin_username')
    @classmethod
    def validate_admin_username(cls, v: str) -> str:
        if not _USERNAME_RE.match(v):
            raise ValueError(
                f"Admin username '{v}' may only contain letters, digits, '.', '_' and '-'"
            )
        return v

    @field_validator('admin_password')
    @classmethod
    def validate_admin_password(cls, v: Optional[SecretStr]) -> Optional[SecretStr]:
        if v is not None and len(v.get_secret_value()) < MIN_PASSWORD_LENGTH:
            raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
        return v

    @field_validator('wg_dns', mode='before')
    @classmethod
    def split_dns(cls, v):
        return _split_list(v)

    @field_validator('wg_allowed_ips', mode='before')
    @classmethod
    def split_allowed_ips(cls, v):
        return _split_list(v)

    @field_validator('wg_dns')
    @classmethod
    def validate_dns(cls, v: List[str]) -> List[str]:
        if not v:
            raise ValueError("At least one WireGuard DNS server is required")
        for server in v:
            try:
                ipaddress.ip_address(server)
            except ValueError:
                raise ValueError(f"DNS server '{server}' is not an IP address")
        return v

    @field_validator('wg_allowed_ips')
    @classmethod
    def validate_allowed_ips(cls, v: List[str]) -> List[str]:
        if not v:
            raise ValueError("At least one allowed IP range is required")
        for cidr in v:
            try:
                ipaddress.ip_network(cidr, strict=False)
            except ValueError:
                raise ValueError(f"Allowed IP range '{cidr}' is not a valid CIDR")
        return v

    @model_validator(mode='before')
    @classmethod
    def apply_defaults(cls, data: Any) -> Any:
        """Fill default-bearing fields that depend on other fields."""
        if not isinstance(data, dict):
            return data

        data = dict(data)
        domain = str(data.get('domain') or '').strip().lower().rstrip('.')

        if not data.get('admin_email') and domain:
            data['admin_email'] = f"admin@{domain}"

        tls_method = data.get('tls_method', 'letsencrypt')
        if tls_method == 'selfsigned':
            data['acme_email'] = None
        elif data.get('acme_email') is None:
            data['acme_email'] = data.get('admin_email')
        return data

    @model_validator(mode='after')
    def validate_conditional_fields(self) -> 'StackParameters':
        if self.admin_email is not None and '@' not in self.admin_email:
            raise ValueError(f"Admin email '{self.admin_email}' is not an email address")
        if self.tls_method == 'letsencrypt':
            if not self.acme_email or not self.acme_email.strip():
                raise ValueError("Let's Encrypt requires an ACME contact email")
            if '@' not in self.acme_email:
                raise ValueError(f"ACME email '{self.acme_email}' is not an email address")
        return self

    # Derived hostnames

    @property
    def vpn_hostname(self) -> str:
        return f"vpn.{self.domain}"

    @property
    def auth_hostname(self) -> str:
        return f"auth.{self.domain}"

    @property
    def dashboard_hostname(self) -> str:
        return f"traefik.{self.domain}"

    def without_password(self) -> 'StackParameters':
        """Return a copy that no longer carries the plaintext password."""
        return self.model_copy(update={'admin_password': None})


def collect(values: Mapping[str, Any]) -> StackParameters:
    """Validate raw operator values into a StackParameters record.

    Args:
        values: Mapping of field name to raw value (from YAML, env or prompts)

    Returns:
        Validated, immutable StackParameters

    Raises:
        ParameterValidationError: Listing every field that failed validation
    """
    try:
        return StackParameters.model_validate(dict(values))
    except ValidationError as exc:
        errors = []
        for err in exc.errors():
            location = '.'.join(str(part) for part in err.get('loc', ())) or 'parameters'
            message = err.get('msg', 'invalid value')
            if message.startswith('Value error, '):
                message = message[len('Value error, '):]
            errors.append(f"{location}: {message}")
        raise ParameterValidationError(
            "Invalid parameters:\n  " + "\n  ".join(errors),
            errors=errors,
        ) from exc
