"""Tests for host-facing services: firewall, certificates, password hashing, preflight."""
import stat
import subprocess
from unittest.mock import MagicMock, patch

import pytest

from vpnstack.core.errors import CommandError, HashingError, StackEnvironmentError
from vpnstack.core.preflight import (
    check_docker_version,
    detect_platform,
    parse_os_release,
    require_tools,
    run_preflight,
)
from vpnstack.services.certificates import CertificateProvisioner
from vpnstack.services.docker_compose import ComposeRunner
from vpnstack.services.firewall import FirewallConfigurator
from vpnstack.services.password_hasher import AutheliaPasswordHasher


class TestFirewall:
    def test_ufw_rules(self):
        firewall = FirewallConfigurator(mock=True)
        assert firewall.configure() == "ufw"

        commands = [" ".join(args) for args in firewall.history]
        for port in ("22/tcp", "80/tcp", "443/tcp", "51820/udp"):
            assert any(c.startswith(f"ufw allow {port}") for c in commands)
        for port in ("51821/tcp", "9091/tcp"):
            assert any(c.startswith(f"ufw deny {port}") for c in commands)

    def test_firewalld_rules(self):
        commands = [" ".join(args) for args, _ in FirewallConfigurator().firewalld_commands()]
        assert "firewall-cmd --permanent --add-service=https" in commands
        assert "firewall-cmd --permanent --add-port=51820/udp" in commands
        assert commands[-1] == "firewall-cmd --reload"

    def test_no_backend_warns(self):
        firewall = FirewallConfigurator()
        with patch("shutil.which", return_value=None):
            assert firewall.configure() is None
        assert firewall.history == []

    def test_required_rule_failure(self):
        firewall = FirewallConfigurator()
        error = subprocess.CalledProcessError(1, ["ufw"], stderr="ERROR: problem running")
        with patch("shutil.which", side_effect=lambda tool: "/usr/sbin/ufw" if tool == "ufw" else None):
            with patch("subprocess.run", side_effect=error):
                with pytest.raises(CommandError):
                    firewall.configure()

    def test_required_rule_timeout(self):
        firewall = FirewallConfigurator()
        error = subprocess.TimeoutExpired(["ufw"], 30)
        with patch("shutil.which", side_effect=lambda tool: "/usr/sbin/ufw" if tool == "ufw" else None):
            with patch("subprocess.run", side_effect=error):
                with pytest.raises(CommandError) as exc_info:
                    firewall.configure()
        assert "timed out" in str(exc_info.value)
        assert exc_info.value.category == "command"

    def test_firewall_tool_vanished(self):
        firewall = FirewallConfigurator()
        with patch("shutil.which", side_effect=lambda tool: "/usr/bin/firewall-cmd" if tool == "firewall-cmd" else None):
            with patch("subprocess.run", side_effect=FileNotFoundError()):
                with pytest.raises(StackEnvironmentError):
                    firewall.configure()

    def test_optional_rule_timeout_ignored(self):
        firewall = FirewallConfigurator()
        calls = []

        def run(args, **kwargs):
            calls.append(args)
            if args[:2] == ["ufw", "deny"]:
                raise subprocess.TimeoutExpired(args, 30)
            return MagicMock()

        with patch("shutil.which", side_effect=lambda tool: "/usr/sbin/ufw" if tool == "ufw" else None):
            with patch("subprocess.run", side_effect=run):
                assert firewall.configure() == "ufw"
        assert calls[-1] == ["ufw", "reload"]

    def test_optional_rule_failure_ignored(self):
        firewall = FirewallConfigurator()
        calls = []

        def run(args, **kwargs):
            calls.append(args)
            if args[:2] == ["ufw", "deny"]:
                raise subprocess.CalledProcessError(1, args)
            return MagicMock()

        with patch("shutil.which", side_effect=lambda tool: "/usr/sbin/ufw" if tool == "ufw" else None):
            with patch("subprocess.run", side_effect=run):
                assert firewall.configure() == "ufw"
        assert calls[-1] == ["ufw", "reload"]


class TestCertificates:
    def test_acme_storage_mode(self, tmp_path):
        provisioner = CertificateProvisioner(tmp_path / "certs")
        path = provisioner.ensure_acme_storage()
        assert path.exists()
        assert stat.S_IMODE(path.stat().st_mode) == 0o600

    def test_acme_storage_keeps_content(self, tmp_path):
        provisioner = CertificateProvisioner(tmp_path)
        provisioner.acme_file.write_text('{"letsencrypt": {}}')
        provisioner.ensure_acme_storage()
        assert provisioner.acme_file.read_text() == '{"letsencrypt": {}}'

    def test_self_signed_command(self, tmp_path):
        command = CertificateProvisioner(tmp_path).self_signed_command("example.com")
        assert command[:3] == ["openssl", "req", "-x509"]
        assert "/CN=*.example.com" in command
        assert "subjectAltName=DNS:*.example.com,DNS:example.com" in command

    def test_existing_pair_kept(self, tmp_path):
        provisioner = CertificateProvisioner(tmp_path)
        provisioner.cert_file.write_text("cert")
        provisioner.key_file.write_text("key")
        with patch("subprocess.run") as mock_run:
            assert provisioner.ensure_self_signed("example.com") is False
        mock_run.assert_not_called()

    def test_generates_and_restricts_key(self, tmp_path):
        provisioner = CertificateProvisioner(tmp_path)

        def fake_openssl(args, **kwargs):
            provisioner.cert_file.write_text("cert")
            provisioner.key_file.write_text("key")
            return MagicMock()

        with patch("subprocess.run", side_effect=fake_openssl):
            assert provisioner.ensure_self_signed("example.com") is True
        assert stat.S_IMODE(provisioner.key_file.stat().st_mode) == 0o600

    def test_missing_openssl(self, tmp_path):
        provisioner = CertificateProvisioner(tmp_path)
        with patch("subprocess.run", side_effect=FileNotFoundError()):
            with pytest.raises(StackEnvironmentError):
                provisioner.ensure_self_signed("example.com")


class TestPasswordHasher:
    def test_command(self):
        command = AutheliaPasswordHasher().command("s3cret-password")
        assert command[:4] == ["docker", "run", "--rm", "authelia/authelia:4.39"]
        assert command[-2:] == ["--password", "s3cret-password"]

    def test_mock_is_deterministic(self):
        hasher = AutheliaPasswordHasher(mock=True)
        assert hasher("correct-horse-battery") == hasher.hash("correct-horse-battery")
        assert hasher("correct-horse-battery") != hasher("another-password")
        assert hasher("correct-horse-battery").startswith("$argon2id$v=19$")

    def test_parse_digest(self):
        output = "Digest: $argon2id$v=19$m=65536,t=3,p=4$abc$def\n"
        assert AutheliaPasswordHasher.parse_digest(output) == "$argon2id$v=19$m=65536,t=3,p=4$abc$def"

    def test_runs_docker(self):
        completed = MagicMock(stdout="Digest: $argon2id$v=19$m=65536,t=3,p=4$abc$def\n")
        with patch("subprocess.run", return_value=completed):
            assert AutheliaPasswordHasher().hash("s3cret-password").startswith("$argon2id$")

    def test_empty_password(self):
        with pytest.raises(HashingError):
            AutheliaPasswordHasher(mock=True).hash("")

    def test_docker_missing(self):
        with patch("subprocess.run", side_effect=FileNotFoundError()):
            with pytest.raises(HashingError):
                AutheliaPasswordHasher().hash("s3cret-password")

    def test_command_failure(self):
        error = subprocess.CalledProcessError(125, ["docker"])
        with patch("subprocess.run", side_effect=error):
            with pytest.raises(HashingError):
                AutheliaPasswordHasher().hash("s3cret-password")

    def test_no_digest(self):
        with patch("subprocess.run", return_value=MagicMock(stdout="unexpected\n")):
            with pytest.raises(HashingError):
                AutheliaPasswordHasher().hash("s3cret-password")


class TestPreflight:
    def test_parse_os_release(self):
        values = parse_os_release('ID=ubuntu\nVERSION_ID="24.04"\nPRETTY_NAME="Ubuntu 24.04 LTS"\n')
        assert values == {'ID': 'ubuntu', 'VERSION_ID': '24.04', 'PRETTY_NAME': 'Ubuntu 24.04 LTS'}

    @pytest.mark.parametrize("os_id,family", [
        ("ubuntu", "debian"), ("debian", "debian"), ("almalinux", "rhel"), ("fedora", "rhel"),
    ])
    def test_supported_platforms(self, tmp_path, os_id, family):
        os_release = tmp_path / "os-release"
        os_release.write_text(f'ID={os_id}\nVERSION_ID="9.3"\n')
        info = detect_platform(os_release)
        assert info.family == family
        assert info.version == "9"

    def test_unsupported_platform(self, tmp_path):
        os_release = tmp_path / "os-release"
        os_release.write_text("ID=arch\n")
        with pytest.raises(StackEnvironmentError) as exc_info:
            detect_platform(os_release)
        assert "Unsupported OS: arch" in str(exc_info.value)

    def test_missing_os_release(self, tmp_path):
        with pytest.raises(StackEnvironmentError):
            detect_platform(tmp_path / "missing")

    def test_missing_tools(self):
        with patch("shutil.which", return_value=None):
            with pytest.raises(StackEnvironmentError) as exc_info:
                require_tools()
        assert "docker, openssl" in str(exc_info.value)

    @pytest.mark.parametrize("version", ["24.0.7", "27.3.1"])
    def test_docker_version_ok(self, version):
        check_docker_version(version, 24)

    @pytest.mark.parametrize("version", [None, "", "20.10.24", "garbage"])
    def test_docker_version_rejected(self, version):
        with pytest.raises(StackEnvironmentError):
            check_docker_version(version, 24)

    def test_mock_skips_host_checks(self, tmp_path):
        report = run_preflight(ComposeRunner(tmp_path, mock=True), 24, os_release=tmp_path / "missing")
        assert report.docker_version == "27.0.0"
        assert report.platform is None

    def test_unsupported_host_aborts(self, tmp_path):
        os_release = tmp_path / "os-release"
        os_release.write_text("ID=arch\n")
        with pytest.raises(StackEnvironmentError):
            run_preflight(ComposeRunner(tmp_path), 24, require_superuser=False, os_release=os_release)
