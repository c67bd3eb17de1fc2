"""Fixtures: a simulated host so steps and verbs run without root, apt or docker."""

import json
from pathlib import Path

import pytest

from asfadeploy.errors import ExternalToolFailure
from asfadeploy.layout import Layout
from asfadeploy.redact import clear_secrets
from asfadeploy.runner import CommandResult, CommandRunner
from asfadeploy.types import DeploymentConfig

DOMAIN = "school.com"
EMAIL = "a@b.com"
IMAGE = "acerschoolapp/acerschoolfinanceapp:latest"
REMOTE_HEAD = "4b825dc642cb6eb9a060e54bf8d69288fbee4904"
DIGEST_V1 = "sha256:" + "1" * 64
DIGEST_V2 = "sha256:" + "2" * 64


class FakeHost(CommandRunner):
    """Command runner backed by an in-memory model of an Ubuntu host.

    The initial state is a fresh VPS: nothing installed except a host nginx.
    Files the tools would create (git checkout, certbot certificates, docker
    credentials) are created for real under the test's tmp directories.
    """

    def __init__(self, letsencrypt_dir: Path, docker_config_dir: Path):
        self.is_root = True
        self.letsencrypt_dir = letsencrypt_dir
        self.docker_config_dir = docker_config_dir
        self.calls: list[list[str]] = []
        self.inputs: list[str | None] = []
        self.streamed: list[list[str]] = []
        self.failures: dict[str, int] = {}

        self.packages = {"nginx", "nginx-common", "nginx-core"}
        self.nginx_active = True
        self.docker = False
        self.compose_plugin = False
        self.users = {"root"}
        self.enabled_units: set[str] = set()
        self.ufw_active = False
        self.ufw_rules: set[str] = set()
        self.git_remote: str | None = None
        self.local_head: str | None = None
        self.remote_head = REMOTE_HEAD
        self.remote_digest = DIGEST_V1
        self.local_digests: set[str] = set()
        self.running: set[str] = set()
        self.export = '[{"model": "auth.user", "pk": 1}]\n'
        self.coolify: dict[str, set[str]] = {}  # label -> ids
        self.coolify_running: set[str] = set()

    def fail_on(self, prefix: str, returncode: int = 1) -> None:
        """Make every command starting with prefix exit with returncode."""
        self.failures[prefix] = returncode

    def ran(self, prefix: str) -> bool:
        return any(" ".join(c).startswith(prefix) for c in self.calls)

    def count(self, prefix: str) -> int:
        return sum(1 for c in self.calls if " ".join(c).startswith(prefix))

    def run(self, *args, check=True, timeout=300, input=None, cwd=None, sudo=False):
        argv = [str(a) for a in args]
        if argv[:1] == ["env"]:
            argv = argv[1:]
            while argv and "=" in argv[0]:
                argv = argv[1:]
        self.calls.append(argv)
        self.inputs.append(input)

        joined = " ".join(argv)
        forced = next((rc for p, rc in self.failures.items() if joined.startswith(p)), None)
        if forced is not None:
            code, out = forced, ""
            err = f"simulated failure: {joined}"
        else:
            code, out = self._dispatch(argv, input)
            err = "" if code == 0 else f"{argv[0]}: exit {code}"
        result = CommandResult(argv, code, out, err)
        if check and not result.ok:
            raise ExternalToolFailure(argv, code, out, err)
        return result

    def stream(self, *args, cwd=None, sudo=False):
        self.streamed.append([str(a) for a in args])
        return 0

    # -- simulated tools -------------------------------------------------

    def _dispatch(self, argv: list[str], input: str | None) -> tuple[int, str]:
        tool = argv[0]
        handler = getattr(self, f"_{tool.replace('-', '_')}", None)
        if handler is None:
            return 0, ""
        return handler(argv[1:], input)

    def _dpkg_query(self, args, _input):
        if args[-1] in self.packages:
            return 0, "install ok installed"
        return 1, ""

    def _apt_get(self, args, _input):
        action, pkgs = args[0], [a for a in args[1:] if not a.startswith("-")]
        if action == "install":
            self.packages.update(pkgs)
            if "docker-compose-plugin" in pkgs:
                self.compose_plugin = True
        elif action == "purge":
            self.packages.difference_update(pkgs)
        return 0, ""

    def _systemctl(self, args, _input):
        verb = args[0]
        unit = args[-1]
        if verb == "is-active":
            if unit == "nginx":
                return (0, "active") if self.nginx_active else (3, "inactive")
            return (0, "active\n") if self.running else (3, "inactive\n")
        if verb == "stop" and unit == "nginx":
            self.nginx_active = False
        if verb == "enable":
            self.enabled_units.add(unit)
        if verb == "is-enabled":
            return (0, "enabled") if unit in self.enabled_units else (1, "disabled")
        return 0, ""

    def _sh(self, args, _input):
        if "get.docker.com" in args[-1]:
            self.docker = True
            self.compose_plugin = True
        return 0, ""

    def _id(self, args, _input):
        return (0, f"uid=1001({args[0]})") if args[0] in self.users else (1, "")

    def _useradd(self, args, _input):
        self.users.add(args[-1])
        return 0, ""

    def _test(self, args, _input):
        return (0, "") if Path(args[-1]).is_file() else (1, "")

    def _git(self, args, _input):
        repo = Path(args[1])
        cmd = args[2:]
        if cmd[0] == "init":
            (repo / ".git").mkdir(parents=True, exist_ok=True)
        elif cmd[:2] == ["remote", "get-url"]:
            return (0, self.git_remote + "\n") if self.git_remote else (2, "")
        elif cmd[0] == "remote":
            self.git_remote = cmd[-1]
        elif cmd[0] == "rev-parse":
            if cmd[1] == "HEAD":
                return (0, self.local_head + "\n") if self.local_head else (128, "")
            return 0, self.remote_head + "\n"
        elif cmd[0] == "checkout":
            self.local_head = self.remote_head
        return 0, ""

    def _certbot(self, args, _input):
        domain = args[args.index("-d") + 1]
        live = self.letsencrypt_dir / "live" / domain
        live.mkdir(parents=True, exist_ok=True)
        (live / "fullchain.pem").write_text("CERT")
        (live / "privkey.pem").write_text("KEY")
        return 0, ""

    def _ufw(self, args, _input):
        if args[0] == "status":
            if not self.ufw_active:
                return 0, "Status: inactive\n"
            rules = "\n".join(f"{r:<20}ALLOW       Anywhere" for r in sorted(self.ufw_rules))
            return 0, f"Status: active\n\nTo                  Action      From\n{rules}\n"
        if args[0] == "allow":
            self.ufw_rules.add(args[1])
        if args[-1] == "enable":
            self.ufw_active = True
        return 0, ""

    def _docker(self, args, input):
        if args[0] == "--version":
            return (0, "Docker version 27.3.1, build ce12230\n") if self.docker else (127, "")
        if args[0] == "compose":
            return self._compose(args[1:])
        if args[0] == "login":
            registry = args[-1] if args[-1] != "--password-stdin" else "https://index.docker.io/v1/"
            path = self.docker_config_dir / "config.json"
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps({"auths": {registry: {"auth": "x"}}}))
            return 0, "Login Succeeded\n"
        if args[:2] == ["image", "inspect"]:
            if not self.local_digests:
                return 1, ""
            return 0, ",".join(sorted(self.local_digests)) + "\n"
        if args[:2] == ["buildx", "imagetools"]:
            return 0, self.remote_digest + "\n"
        if args[0] == "ps":
            label = args[args.index("--filter") + 1].removeprefix("label=")
            ids = self.coolify.get(label, set())
            if "-a" not in args:
                ids = ids & self.coolify_running
            return 0, "".join(f"{i}\n" for i in sorted(ids))
        if args[0] == "stop":
            self.coolify_running.difference_update(args[1:])
        if args[0] == "start":
            self.coolify_running.update(args[1:])
        return 0, ""

    def _compose(self, args):
        if not self.compose_plugin:
            return 1, "docker: 'compose' is not a docker command.\n"
        if args[0] == "version":
            return 0, "Docker Compose version v2.29.7\n"
        cmd = args[2:]  # drop -f <file>
        if cmd[0] == "ps":
            if "--services" in cmd:
                return 0, "".join(f"{s}\n" for s in sorted(self.running))
            return 0, "NAME  STATUS\n" + "".join(f"asfa_{s}  Up\n" for s in sorted(self.running))
        if cmd[0] == "pull":
            repo = IMAGE.rsplit(":", 1)[0]
            self.local_digests = {f"{repo}@{self.remote_digest}"}
        elif cmd[0] == "up":
            self.running = {"caddy", "web", "redis"}
        elif cmd[0] == "down":
            self.running = set()
        elif cmd[:3] == ["exec", "-T", "web"]:
            return 0, self.export
        return 0, ""


@pytest.fixture(autouse=True)
def _no_registered_secrets():
    yield
    clear_secrets()


@pytest.fixture
def layout(tmp_path) -> Layout:
    return Layout(
        app_dir=tmp_path / "opt" / "apps" / "asfa",
        service_name="asfa",
        domain=DOMAIN,
        systemd_dir=tmp_path / "systemd",
        letsencrypt_dir=tmp_path / "letsencrypt",
        docker_config_dir=tmp_path / "docker",
    )


@pytest.fixture
def host(layout) -> FakeHost:
    return FakeHost(layout.letsencrypt_dir, layout.docker_config_dir)


@pytest.fixture
def config() -> DeploymentConfig:
    return DeploymentConfig(
        domain=DOMAIN, app_dir="/opt/apps/asfa", ssl_mode="letsencrypt", email=EMAIL
    )
