"""Tests for the step pipeline against a simulated host.

The scenarios follow one host through its life: a fresh VPS, a re-run with
nothing to do, a new image in the registry, and runs that fail part way.
"""

from dataclasses import replace

import pytest

from asfadeploy.config import load
from asfadeploy.deploy import check_host, run_deployment
from asfadeploy.errors import (
    ConcurrentRunDetected,
    ExternalToolFailure,
    InvalidConfig,
    UnsupportedHost,
)
from asfadeploy.pipeline import Pipeline, PipelineContext, ProvisioningStep, pipeline_lock
from asfadeploy.steps import build_steps, registry_host

DIGEST_V2 = "sha256:" + "2" * 64

ALL_STEPS = [
    "system-packages",
    "remove-host-nginx",
    "container-runtime",
    "deployer-user",
    "repository",
    "tls-certificate",
    "env-file",
    "reverse-proxy",
    "compose",
    "service-unit",
    "firewall",
    "start",
]


def _resolve(host):
    return "203.0.113.10"


def _deploy(config, host, layout, **kwargs):
    return run_deployment(config, host, layout=layout, resolve_dns=_resolve, **kwargs)


def test_fresh_host_runs_every_step(config, host, layout):
    """school.com / letsencrypt / a@b.com on a fresh VPS: every step succeeds."""
    report = _deploy(config, host, layout)

    assert report.state == "completed"
    assert [r.name for r in report.results] == ALL_STEPS
    assert set(report.states().values()) == {"succeeded"}

    saved = load(layout.config_file)
    assert saved.domain == "school.com"
    assert saved.app_dir == "/opt/apps/asfa"
    assert saved.ssl_mode == "letsencrypt"
    assert saved.email == "a@b.com"
    assert saved.firewall_enabled is True

    assert host.running == {"caddy", "web", "redis"}
    assert layout.live_cert.is_file()
    assert "nginx" not in host.packages
    assert layout.unit_name in host.enabled_units


def test_second_run_skips_everything(config, host, layout):
    _deploy(config, host, layout)
    calls_before = len(host.calls)

    report = _deploy(config, host, layout)

    assert report.state == "completed"
    assert set(report.states().values()) == {"skipped"}
    assert all(r.detail for r in report.results)
    new_calls = host.calls[calls_before:]
    mutating = {"apt-get", "useradd", "certbot", "usermod"}
    assert not [c for c in new_calls if c[0] in mutating]
    assert not any(c[:2] == ["docker", "compose"] and "up" in c for c in new_calls)


def test_new_image_reruns_only_start(config, host, layout):
    _deploy(config, host, layout)
    host.remote_digest = DIGEST_V2

    report = _deploy(config, host, layout)

    states = report.states()
    assert states["start"] == "succeeded"
    assert {s for name, s in states.items() if name != "start"} == {"skipped"}
    assert any(d.endswith(DIGEST_V2) for d in host.local_digests)


def test_changed_artifact_restarts_stack_and_reloads_proxy(config, host, layout):
    _deploy(config, host, layout)
    layout.proxy_file.write_text("# hand edited\n")

    report = _deploy(config, host, layout)

    assert report.by_name("reverse-proxy").state == "succeeded"
    assert report.by_name("start").state == "succeeded"
    assert host.ran(f"docker compose -f {layout.compose_file} restart caddy")
    assert list(layout.proxy_dir.glob("Caddyfile.backup.*"))


def test_existing_env_file_keeps_operator_values(config, host, layout):
    layout.app_dir.mkdir(parents=True)
    layout.env_file.write_text("SECRET_KEY=operator-chosen\nSECURE_SSL_REDIRECT=True\n")

    report = _deploy(config, host, layout)

    assert report.by_name("env-file").state == "skipped"
    assert layout.env_file.read_text() == "SECRET_KEY=operator-chosen\nSECURE_SSL_REDIRECT=True\n"


def test_ssl_mode_switch_updates_only_mode_keys_in_env_file(config, host, layout):
    _deploy(config, host, layout)
    edited = layout.env_file.read_text().replace(
        "DATABASE_URL=__UNSET_DATABASE_URL__", "DATABASE_URL=postgres://db/asfa"
    )
    layout.env_file.write_text(edited)
    secret_line = next(line for line in edited.splitlines() if line.startswith("SECRET_KEY="))

    report = _deploy(replace(config, ssl_mode="http-only", email=None), host, layout)

    assert report.state == "completed"
    assert report.by_name("env-file").state == "succeeded"
    content = layout.env_file.read_text()
    assert "SITE_URL=http://school.com\n" in content
    assert "CSRF_ORIGINS=http://school.com,http://www.school.com\n" in content
    assert "SECURE_SSL_REDIRECT=False\n" in content
    assert "DATABASE_URL=postgres://db/asfa\n" in content
    assert secret_line in content.splitlines()
    backups = list(layout.env_file.parent.glob(f"{layout.env_file.name}.backup.*"))
    assert [b.read_text() for b in backups] == [edited]

    report = _deploy(replace(config, ssl_mode="http-only", email=None), host, layout)
    assert report.by_name("env-file").state == "skipped"


def test_new_env_file_gets_a_generated_secret_key(config, host, layout):
    _deploy(config, host, layout)
    content = layout.env_file.read_text()
    key = next(line for line in content.splitlines() if line.startswith("SECRET_KEY="))
    assert "__UNSET_" not in key
    assert len(key.split("=", 1)[1]) >= 50


def test_fatal_failure_aborts_and_leaves_rest_pending(config, host, layout):
    host.fail_on("certbot")

    report = _deploy(config, host, layout)

    assert report.state == "aborted"
    states = report.states()
    assert states["tls-certificate"] == "failed"
    after = ALL_STEPS[ALL_STEPS.index("tls-certificate") + 1:]
    assert all(states[name] == "pending" for name in after)
    assert report.aborted_at.name == "tls-certificate"
    assert "simulated failure" in report.aborted_at.detail
    assert not layout.config_file.exists()
    assert not host.running


def test_continuable_failure_does_not_stop_the_run(config, host, layout):
    host.fail_on("ufw allow")

    report = _deploy(config, host, layout)

    assert report.state == "completed"
    assert report.by_name("firewall").state == "failed"
    assert report.by_name("start").state == "succeeded"
    assert [r.name for r in report.failed] == ["firewall"]
    assert layout.config_file.exists()


def test_rerun_after_failure_resumes(config, host, layout):
    host.fail_on("certbot")
    _deploy(config, host, layout)
    host.failures.clear()

    report = _deploy(config, host, layout)

    assert report.state == "completed"
    states = report.states()
    assert states["system-packages"] == "skipped"
    assert states["tls-certificate"] == "succeeded"
    assert states["start"] == "succeeded"


def test_http_only_skips_certificate(config, host, layout):
    config = replace(config, ssl_mode="http-only", email=None)

    report = _deploy(config, host, layout)

    assert report.by_name("tls-certificate").state == "skipped"
    assert not host.ran("certbot")
    assert "443" not in layout.proxy_file.read_text()


def test_cloudflare_origin_needs_operator_certificate(config, host, layout):
    config = replace(config, ssl_mode="cloudflare-origin", email=None)

    report = _deploy(config, host, layout)
    assert report.state == "aborted"
    assert "origin.pem" in report.by_name("tls-certificate").detail
    assert layout.certs_dir.is_dir()

    layout.origin_cert.write_text("CERT")
    layout.origin_key.write_text("KEY")
    report = _deploy(config, host, layout)
    assert report.state == "completed"
    assert report.by_name("tls-certificate").state == "skipped"


def test_optional_steps_follow_config(config):
    names = [s.name for s in build_steps(config)]
    assert "registry-login" not in names
    assert "deployer-user" in names

    config = replace(
        config, registry_username="acer", firewall_enabled=False, create_deployer_user=False
    )
    names = [s.name for s in build_steps(config)]
    assert "registry-login" in names
    assert "firewall" not in names
    assert "deployer-user" not in names
    ordinals = [s.ordinal for s in build_steps(config)]
    assert ordinals == sorted(ordinals)


def test_registry_login_uses_stdin_password(config, host, layout):
    config = replace(config, registry_username="acer")

    report = _deploy(config, host, layout, secrets={"registry_password": "hunter2-password"})

    assert report.by_name("registry-login").state == "succeeded"
    login = host.calls.index(next(c for c in host.calls if c[:2] == ["docker", "login"]))
    assert "hunter2-password" not in host.calls[login]
    assert host.inputs[login] == "hunter2-password"

    report = _deploy(config, host, layout)
    assert report.by_name("registry-login").state == "skipped"


def test_registry_login_without_password_aborts(config, host, layout):
    config = replace(config, registry_username="acer")
    report = _deploy(config, host, layout)
    assert report.state == "aborted"
    assert "ASFA_REGISTRY_PASSWORD" in report.by_name("registry-login").detail


def test_registry_host():
    assert registry_host("acerschoolapp/app:latest") == "https://index.docker.io/v1/"
    assert registry_host("redis") == "https://index.docker.io/v1/"
    assert registry_host("ghcr.io/acer/app:1.0") == "ghcr.io"
    assert registry_host("localhost:5000/app") == "localhost:5000"


def test_precondition_error_counts_as_not_satisfied(config, host, layout):
    ran = []

    def broken(ctx):
        raise ExternalToolFailure(["systemctl", "is-active", "asfa"], 1)

    step = ProvisioningStep("check", 1, broken, lambda ctx: ran.append(True))
    report = Pipeline([step]).run(PipelineContext(config, layout, host))
    assert report.state == "completed"
    assert ran == [True]


def test_unexpected_config_error_in_action_is_reported(config, host, layout):
    def action(ctx):
        raise InvalidConfig("bad value")

    steps = [
        ProvisioningStep("first", 1, lambda ctx: None, action, "continuable"),
        ProvisioningStep("second", 2, lambda ctx: None, lambda ctx: None),
    ]
    report = Pipeline(steps).run(PipelineContext(config, layout, host))
    assert report.states() == {"first": "failed", "second": "succeeded"}
    assert report.by_name("first").detail == "bad value"


def test_os_error_in_action_is_a_step_failure(config, host, layout):
    def action(ctx):
        raise PermissionError(13, "Permission denied", "/etc/passwd")

    steps = [
        ProvisioningStep("first", 1, lambda ctx: None, lambda ctx: None),
        ProvisioningStep("broken", 2, lambda ctx: None, action),
        ProvisioningStep("third", 3, lambda ctx: None, lambda ctx: None),
    ]
    report = Pipeline(steps).run(PipelineContext(config, layout, host))

    assert report.state == "aborted"
    assert report.states() == {"first": "succeeded", "broken": "failed", "third": "pending"}
    assert report.aborted_at.name == "broken"
    assert report.aborted_at.detail.startswith("PermissionError: ")


def test_unexpected_error_in_precondition_follows_severity(config, host, layout):
    def precondition(ctx):
        raise KeyError("getpwuid(): uid not found: 1234")

    steps = [
        ProvisioningStep("lookup", 1, precondition, lambda ctx: None, "continuable"),
        ProvisioningStep("second", 2, lambda ctx: None, lambda ctx: None),
    ]
    report = Pipeline(steps).run(PipelineContext(config, layout, host))

    assert report.state == "completed"
    assert report.states() == {"lookup": "failed", "second": "succeeded"}
    assert "KeyError" in report.by_name("lookup").detail


def test_keyboard_interrupt_is_not_swallowed(config, host, layout):
    def action(ctx):
        raise KeyboardInterrupt

    step = ProvisioningStep("interrupted", 1, lambda ctx: None, action)
    with pytest.raises(KeyboardInterrupt):
        Pipeline([step]).run(PipelineContext(config, layout, host))


def test_duplicate_step_names_are_rejected():
    step = ProvisioningStep("same", 1, lambda ctx: None, lambda ctx: None)
    with pytest.raises(ValueError):
        Pipeline([step, replace(step, ordinal=2)])


def test_concurrent_run_is_refused(config, host, layout):
    with pipeline_lock(layout.lock_file):
        with pytest.raises(ConcurrentRunDetected):
            _deploy(config, host, layout)
    assert host.calls == []

    # Released on exit
    assert _deploy(config, host, layout).state == "completed"


def test_check_host_accepts_ubuntu_and_debian(tmp_path):
    os_release = tmp_path / "os-release"
    os_release.write_text('ID=ubuntu\nID_LIKE=debian\nPRETTY_NAME="Ubuntu 24.04 LTS"\n')
    assert check_host(os_release) == "Ubuntu 24.04 LTS"

    os_release.write_text('ID=linuxmint\nID_LIKE="ubuntu debian"\n')
    check_host(os_release)


def test_check_host_rejects_other_systems(tmp_path):
    os_release = tmp_path / "os-release"
    os_release.write_text('ID=fedora\nPRETTY_NAME="Fedora Linux 40"\n')
    with pytest.raises(UnsupportedHost):
        check_host(os_release)
    with pytest.raises(UnsupportedHost):
        check_host(tmp_path / "missing")
