"""Tests for artifact synthesis and cross-artifact consistency."""
import copy
from dataclasses import replace

import pytest
import yaml

from vpnstack.core.errors import SynthesisError
from vpnstack.core.synthesizer import (
    ADMIN_MIDDLEWARE_LABEL,
    TRANSFORMS,
    acme_enabled,
    apply_metrics,
    apply_totp,
    has_forward_auth,
    policy_for,
    routed_hostnames,
    static_certificate_enabled,
    synthesize,
    verify_consistency,
)
from vpnstack.models.artifacts import AUTH_POLICY, CREDENTIALS, TLS, TOPOLOGY
from vpnstack.models.parameters import collect


def _variants(param_values):
    """Every combination of the three feature flags."""
    for totp in (True, False):
        for tls in ('letsencrypt', 'selfsigned'):
            for metrics in (True, False):
                for policy in ('one_factor', 'bypass'):
                    yield collect({
                        **param_values,
                        'enable_totp': totp,
                        'tls_method': tls,
                        'enable_metrics': metrics,
                        'single_factor_policy': policy,
                    })


class TestDeterminism:
    def test_same_inputs_same_bytes(self, params, secrets):
        first = synthesize(params, secrets)
        second = synthesize(params, secrets)
        for artifact in first:
            assert artifact.content == second[artifact.name].content

    def test_artifacts_are_valid_yaml(self, params, secrets):
        for artifact in synthesize(params, secrets):
            assert isinstance(yaml.safe_load(artifact.content), dict)

    def test_paths_and_modes(self, params, secrets):
        artifacts = synthesize(params, secrets)
        assert artifacts[TOPOLOGY].path == "docker-compose.yml"
        assert artifacts[AUTH_POLICY].mode == 0o600
        assert artifacts[CREDENTIALS].mode == 0o600
        assert artifacts[TLS].mode == 0o644


class TestInvariants:
    """Properties that hold for every flag combination."""

    def test_every_routed_hostname_has_one_rule(self, param_values, secrets):
        for params in _variants(param_values):
            artifacts = synthesize(params, secrets)
            hosts = routed_hostnames(artifacts.topology)
            assert set(hosts) == {
                params.vpn_hostname, params.auth_hostname, params.dashboard_hostname,
            }
            for host in hosts:
                assert policy_for(artifacts.auth_policy, host) != 'deny'

    def test_totp_biconditional(self, param_values, secrets):
        for params in _variants(param_values):
            artifacts = synthesize(params, secrets)
            forward_auth = has_forward_auth(artifacts.topology)
            two_factor = policy_for(artifacts.auth_policy, params.vpn_hostname) == 'two_factor'
            assert params.enable_totp == forward_auth == two_factor

    def test_tls_exclusivity(self, param_values, secrets):
        for params in _variants(param_values):
            artifacts = synthesize(params, secrets)
            acme = acme_enabled(artifacts.topology)
            static = static_certificate_enabled(artifacts.tls)
            assert acme != static
            assert acme == (params.tls_method == 'letsencrypt')

    def test_data_tier_isolated(self, param_values, secrets):
        for params in _variants(param_values):
            services = synthesize(params, secrets).topology['services']
            for name in ('postgres', 'redis'):
                assert 'ports' not in services[name]
                assert services[name]['networks'] == ['vpn_internal']

    def test_default_deny(self, params, secrets):
        policy = synthesize(params, secrets).auth_policy
        assert policy['access_control']['default_policy'] == 'deny'
        assert policy_for(policy, 'unknown.example.com') == 'deny'

    def test_redis_password_passed_as_one_argument(self, params, secrets):
        secrets = replace(secrets, redis_password="ab&cd;ef|gh<ij>kl#mn^op%q")
        artifacts = synthesize(params, secrets)

        command = artifacts.topology['services']['redis']['command']
        assert command == [
            "redis-server",
            "--requirepass", "${REDIS_PASSWORD}",
            "--maxmemory", "128mb",
            "--maxmemory-policy", "allkeys-lru",
        ]
        rendered = yaml.safe_load(artifacts[TOPOLOGY].content)
        assert rendered['services']['redis']['command'] == command
        assert artifacts.auth_policy['session']['redis']['password'] == secrets.redis_password

    def test_secrets_referenced_not_inlined_in_topology(self, params, secrets):
        content = synthesize(params, secrets)[TOPOLOGY].content
        assert "${POSTGRES_PASSWORD}" in content
        assert secrets.postgres_password not in content
        assert secrets.storage_encryption_key not in content


class TestScenarios:
    def test_totp_off_selfsigned(self, secrets):
        """example.com with TOTP disabled and a self-signed certificate."""
        params = collect({
            'domain': 'example.com',
            'vpn_host': '203.0.113.10',
            'enable_totp': False,
            'tls_method': 'selfsigned',
        })
        artifacts = synthesize(params, secrets)

        assert ADMIN_MIDDLEWARE_LABEL not in artifacts.topology['services']['wg-easy']['labels']
        assert policy_for(artifacts.auth_policy, 'vpn.example.com') == 'one_factor'
        assert policy_for(artifacts.auth_policy, 'auth.example.com') == 'bypass'

        certificate = artifacts.tls['tls']['stores']['default']['defaultCertificate']
        assert certificate == {'certFile': '/certs/cert.pem', 'keyFile': '/certs/key.pem'}
        command = artifacts.topology['services']['traefik']['command']
        assert not any('certificatesresolvers' in flag for flag in command)

    def test_totp_on_selfsigned(self, secrets):
        """example.com with TOTP enabled and a self-signed certificate."""
        params = collect({
            'domain': 'example.com',
            'vpn_host': '203.0.113.10',
            'enable_totp': True,
            'tls_method': 'selfsigned',
        })
        artifacts = synthesize(params, secrets)

        assert policy_for(artifacts.auth_policy, 'auth.example.com') == 'bypass'
        assert policy_for(artifacts.auth_policy, 'vpn.example.com') == 'two_factor'
        assert policy_for(artifacts.auth_policy, 'traefik.example.com') == 'two_factor'
        assert has_forward_auth(artifacts.topology)
        assert ADMIN_MIDDLEWARE_LABEL in artifacts.topology['services']['wg-easy']['labels']
        assert static_certificate_enabled(artifacts.tls)
        assert not acme_enabled(artifacts.topology)

    def test_totp_on_letsencrypt(self, params, secrets):
        artifacts = synthesize(params, secrets)

        labels = artifacts.topology['services']['wg-easy']['labels']
        assert ADMIN_MIDDLEWARE_LABEL in labels
        assert policy_for(artifacts.auth_policy, 'vpn.example.com') == 'two_factor'
        assert policy_for(artifacts.auth_policy, 'traefik.example.com') == 'two_factor'

        command = artifacts.topology['services']['traefik']['command']
        assert "--certificatesresolvers.letsencrypt.acme.email=admin@example.com" in command
        assert "--certificatesresolvers.letsencrypt.acme.storage=/certs/acme.json" in command
        assert 'stores' not in artifacts.tls['tls']

    def test_bypass_policy_keeps_dashboard_protected(self, param_values, secrets):
        params = collect({**param_values, 'enable_totp': False, 'single_factor_policy': 'bypass'})
        policy = synthesize(params, secrets).auth_policy
        assert policy_for(policy, params.vpn_hostname) == 'bypass'
        assert policy_for(policy, params.dashboard_hostname) == 'one_factor'

    def test_metrics_enabled(self, param_values, secrets):
        params = collect({**param_values, 'enable_metrics': True})
        wg = synthesize(params, secrets).topology['services']['wg-easy']
        assert "METRICS_ENABLED=true" in wg['environment']
        assert "METRICS_PORT=51822" in wg['environment']
        assert "51822" in wg['expose']

    def test_metrics_disabled(self, params, secrets):
        wg = synthesize(params, secrets).topology['services']['wg-easy']
        assert not any(env.startswith("METRICS_") for env in wg['environment'])

    def test_admin_credentials(self, params, secrets):
        users = synthesize(params, secrets).credentials['users']
        assert users['admin'] == {
            'disabled': False,
            'displayname': 'VPN Admin',
            'password': secrets.admin_password_hash,
            'email': 'admin@example.com',
            'groups': ['vpn-admins'],
        }

    def test_parameters_inlined(self, param_values, secrets):
        params = collect({**param_values, 'timezone': 'Europe/Stockholm', 'wg_dns': '9.9.9.9'})
        topology = synthesize(params, secrets).topology
        assert "TZ=Europe/Stockholm" in topology['services']['authelia']['environment']
        assert "WG_DEFAULT_DNS=9.9.9.9" in topology['services']['wg-easy']['environment']
        assert "WG_HOST=203.0.113.10" in topology['services']['wg-easy']['environment']


class TestTransforms:
    def test_transforms_do_not_mutate_input(self, param_values, params, secrets):
        docs = synthesize(
            collect({**param_values, 'enable_totp': False}),
            secrets,
        ).documents
        before = copy.deepcopy(docs)

        apply_totp(docs, params)
        apply_metrics(docs, collect({**param_values, 'enable_metrics': True}))

        assert docs == before

    def test_apply_totp_is_idempotent(self, params, secrets):
        docs = synthesize(params, secrets).documents
        again = apply_totp(docs, params)
        assert again.topology == docs.topology
        assert again.auth_policy == docs.auth_policy

    def test_pipeline_order(self):
        assert [t.__name__ for t in TRANSFORMS] == ['apply_tls_method', 'apply_totp', 'apply_metrics']


class TestFailures:
    def test_letsencrypt_without_email(self, params, secrets):
        unsatisfiable = params.model_copy(update={'acme_email': ''})
        with pytest.raises(SynthesisError) as exc_info:
            synthesize(unsatisfiable, secrets)
        assert "ACME email" in str(exc_info.value)

    def test_missing_totp_transform_detected(self, params, secrets):
        """Without the TOTP delta the protected hosts stay at deny."""
        with pytest.raises(SynthesisError) as exc_info:
            synthesize(params, secrets, transforms=(TRANSFORMS[0], TRANSFORMS[2]))
        assert "TOTP" in str(exc_info.value)

    def test_both_certificate_sources_detected(self, params, secrets):
        docs = synthesize(params, secrets).documents
        tls = copy.deepcopy(docs.tls)
        tls['tls']['stores'] = {'default': {'defaultCertificate': {'certFile': 'a', 'keyFile': 'b'}}}
        with pytest.raises(SynthesisError) as exc_info:
            verify_consistency(replace(docs, tls=tls), params)
        assert "exactly one" in str(exc_info.value)

    def test_published_data_tier_port_detected(self, params, secrets):
        docs = synthesize(params, secrets).documents
        topology = copy.deepcopy(docs.topology)
        topology['services']['postgres']['ports'] = ["5432:5432"]
        with pytest.raises(SynthesisError) as exc_info:
            verify_consistency(replace(docs, topology=topology), params)
        assert "postgres" in str(exc_info.value)

    def test_conflicting_rules_detected(self, params, secrets):
        docs = synthesize(params, secrets).documents
        auth_policy = copy.deepcopy(docs.auth_policy)
        auth_policy['access_control']['rules'].append(
            {'domain': params.vpn_hostname, 'policy': 'one_factor'}
        )
        with pytest.raises(SynthesisError) as exc_info:
            verify_consistency(replace(docs, auth_policy=auth_policy), params)
        assert "conflicting" in str(exc_info.value)
