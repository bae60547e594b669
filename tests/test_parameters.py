"""Tests for deployment parameter validation."""
import pytest
from pydantic import ValidationError

from vpnstack.core.errors import ParameterValidationError
from vpnstack.models.parameters import StackParameters, collect


class TestDefaults:
    """Defaults are applied before conditional checks."""

    def test_minimal_values(self, params):
        assert params.domain == 'example.com'
        assert params.timezone == 'UTC'
        assert params.admin_username == 'admin'
        assert params.enable_totp is True
        assert params.tls_method == 'letsencrypt'
        assert params.wg_dns == ['1.1.1.1', '8.8.8.8']
        assert params.wg_allowed_ips == ['0.0.0.0/0']
        assert params.setup_firewall is True
        assert params.enable_metrics is False

    def test_admin_email_derived_from_domain(self, params):
        assert params.admin_email == 'admin@example.com'

    def test_acme_email_defaults_to_admin_email(self, param_values):
        params = collect({**param_values, 'admin_email': 'ops@example.com'})
        assert params.acme_email == 'ops@example.com'

    def test_selfsigned_clears_acme_email(self, param_values):
        params = collect({**param_values, 'tls_method': 'selfsigned', 'acme_email': 'x@example.com'})
        assert params.acme_email is None

    def test_derived_hostnames(self, params):
        assert params.vpn_hostname == 'vpn.example.com'
        assert params.auth_hostname == 'auth.example.com'
        assert params.dashboard_hostname == 'traefik.example.com'


class TestNormalization:
    def test_domain_lowercased_and_stripped(self, param_values):
        params = collect({**param_values, 'domain': '  Example.COM. '})
        assert params.domain == 'example.com'

    def test_comma_separated_lists(self, param_values):
        params = collect({
            **param_values,
            'wg_dns': '9.9.9.9, 149.112.112.112',
            'wg_allowed_ips': '10.0.0.0/8,192.168.0.0/16',
        })
        assert params.wg_dns == ['9.9.9.9', '149.112.112.112']
        assert params.wg_allowed_ips == ['10.0.0.0/8', '192.168.0.0/16']

    def test_vpn_host_accepts_hostname(self, param_values):
        params = collect({**param_values, 'vpn_host': 'vpn.example.net'})
        assert params.vpn_host == 'vpn.example.net'


class TestValidation:
    """Every failure is reported through ParameterValidationError."""

    @pytest.mark.parametrize("domain", ["", "https://example.com", "exa mple.com", "example.com/path"])
    def test_invalid_domain(self, param_values, domain):
        with pytest.raises(ParameterValidationError) as exc_info:
            collect({**param_values, 'domain': domain})
        assert any(e.startswith('domain') for e in exc_info.value.errors)

    def test_missing_required_fields(self):
        with pytest.raises(ParameterValidationError) as exc_info:
            collect({})
        locations = [e.split(':')[0] for e in exc_info.value.errors]
        assert 'domain' in locations
        assert 'vpn_host' in locations

    def test_short_password(self, param_values):
        with pytest.raises(ParameterValidationError) as exc_info:
            collect({**param_values, 'admin_password': 'short'})
        assert "at least 12 characters" in str(exc_info.value)

    def test_password_optional(self, param_values):
        values = dict(param_values)
        del values['admin_password']
        assert collect(values).admin_password is None

    def test_invalid_username(self, param_values):
        with pytest.raises(ParameterValidationError):
            collect({**param_values, 'admin_username': 'bad user!'})

    def test_invalid_admin_email(self, param_values):
        with pytest.raises(ParameterValidationError) as exc_info:
            collect({**param_values, 'admin_email': 'not-an-email'})
        assert "not an email address" in str(exc_info.value)

    def test_letsencrypt_requires_acme_email(self, param_values):
        with pytest.raises(ParameterValidationError) as exc_info:
            collect({**param_values, 'acme_email': ''})
        assert "ACME" in str(exc_info.value)

    def test_invalid_dns_server(self, param_values):
        with pytest.raises(ParameterValidationError):
            collect({**param_values, 'wg_dns': ['dns.google']})

    def test_invalid_allowed_ips(self, param_values):
        with pytest.raises(ParameterValidationError):
            collect({**param_values, 'wg_allowed_ips': ['10.0.0.0/33']})

    def test_unknown_policy(self, param_values):
        with pytest.raises(ParameterValidationError):
            collect({**param_values, 'single_factor_policy': 'two_factor'})

    def test_unknown_field_rejected(self, param_values):
        with pytest.raises(ParameterValidationError) as exc_info:
            collect({**param_values, 'enable_ipv6': True})
        assert any('enable_ipv6' in e for e in exc_info.value.errors)

    def test_value_error_prefix_stripped(self, param_values):
        with pytest.raises(ParameterValidationError) as exc_info:
            collect({**param_values, 'admin_password': 'short'})
        assert not any('Value error' in e for e in exc_info.value.errors)


class TestImmutability:
    def test_frozen(self, params):
        with pytest.raises(ValidationError):
            params.domain = 'other.com'

    def test_without_password(self, params):
        stripped = params.without_password()
        assert stripped.admin_password is None
        assert params.admin_password is not None
        assert stripped.domain == params.domain

    def test_password_not_in_repr(self, params):
        assert "correct-horse-battery" not in repr(params)
        assert isinstance(params, StackParameters)
