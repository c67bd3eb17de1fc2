"""Artifact templates, one per (artifact kind, SSL mode) pair.

Every template is a pure function of the deployment config, the layout and
the run-local secrets. ``VARIANTS`` is the single lookup table used by the
renderer.
"""

import re
from collections.abc import Callable
from textwrap import dedent, indent

from .layout import Layout
from .types import ArtifactKind, DeploymentConfig, SSLMode

PLACEHOLDER_RE = re.compile(r"__UNSET_[A-Z0-9_]+__")

CONTAINER_LETSENCRYPT_DIR = "/etc/letsencrypt"
CONTAINER_CERTS_DIR = "/etc/caddy/certs"

APP_UPSTREAM = "web:8000"

Template = Callable[[DeploymentConfig, Layout, dict[str, str]], str]


def placeholder(name: str) -> str:
    """Sentinel for a value the operator still has to fill in."""
    return f"__UNSET_{name}__"


def find_placeholders(text: str) -> list[str]:
    return sorted(set(PLACEHOLDER_RE.findall(text)))


# ---------------------------------------------------------------------------
# Caddyfile
# ---------------------------------------------------------------------------


def _caddy_site_body(*, client_ip: str, forwarded_proto: str, hsts: str | None) -> str:
    hsts_line = f'\n            Strict-Transport-Security "{hsts}"' if hsts else ""
    return dedent(f"""
        # ---------- Logging ----------
        log {{
            output file /var/log/caddy/access.log {{
                roll_size     100mb
                roll_keep     5
                roll_keep_for 720h
            }}
            format json
            level  INFO
        }}

        # ---------- Compression ----------
        encode zstd gzip

        # ---------- Security headers ----------
        header {{{hsts_line}
            X-Frame-Options        "SAMEORIGIN"
            X-Content-Type-Options "nosniff"
            X-XSS-Protection       "1; mode=block"
            Referrer-Policy        "strict-origin-when-cross-origin"
            Permissions-Policy     "geolocation=(), microphone=(), camera=()"
            -Server
        }}

        # ---------- Health check ----------
        handle /health/ {{
            reverse_proxy {APP_UPSTREAM}
        }}

        # ---------- Catch-all (WebSocket aware) ----------
        handle {{
            reverse_proxy {APP_UPSTREAM} {{
                header_up Host              {{host}}
                header_up X-Real-IP         {client_ip}
                header_up X-Forwarded-For   {client_ip}
                header_up X-Forwarded-Proto {forwarded_proto}

                header_up Connection {{http.request.header.Connection}}
                header_up Upgrade    {{http.request.header.Upgrade}}

                transport http {{
                    dial_timeout            10s
                    response_header_timeout 600s
                    read_timeout            600s
                    write_timeout           600s
                }}
            }}
        }}
    """).strip()


def _caddy_site(address: str, body: str, tls: str | None = None) -> str:
    tls_line = f"    tls {tls}\n\n" if tls else ""
    return f"{address} {{\n{tls_line}{indent(body, '    ')}\n}}\n"


def _caddy_header(title: str) -> str:
    return dedent(f"""
        # =============================================================
        # Caddyfile: {title}
        # Generated by asfa-deploy. Local edits are backed up and
        # replaced on the next deploy.
        # =============================================================
    """).lstrip()


def caddyfile_letsencrypt(config: DeploymentConfig, layout: Layout, secrets: dict[str, str]) -> str:
    live = f"{CONTAINER_LETSENCRYPT_DIR}/live/{config.domain}"
    body = _caddy_site_body(
        client_ip="{remote_host}",
        forwarded_proto="{scheme}",
        hsts="max-age=31536000; includeSubDomains; preload",
    )
    return (
        _caddy_header("HTTPS with Let's Encrypt certificates issued by certbot")
        + "\n{\n    auto_https disable_certs\n}\n\n"
        + _caddy_site(
            f"{config.domain}, www.{config.domain}",
            body,
            tls=f"{live}/fullchain.pem {live}/privkey.pem",
        )
    )


def caddyfile_cloudflare_origin(config: DeploymentConfig, layout: Layout, secrets: dict[str, str]) -> str:
    body = _caddy_site_body(
        client_ip="{http.request.header.CF-Connecting-IP}",
        forwarded_proto="{scheme}",
        hsts="max-age=31536000; includeSubDomains",
    )
    return (
        _caddy_header("HTTPS with a Cloudflare origin certificate (SSL mode: Full (strict))")
        + "\n{\n    auto_https disable_certs\n}\n\n"
        + _caddy_site(
            f"{config.domain}, www.{config.domain}",
            body,
            tls=f"{CONTAINER_CERTS_DIR}/origin.pem {CONTAINER_CERTS_DIR}/origin.key",
        )
    )


def caddyfile_http_only(config: DeploymentConfig, layout: Layout, secrets: dict[str, str]) -> str:
    body = _caddy_site_body(
        client_ip="{remote_host}",
        forwarded_proto="{http.request.header.X-Forwarded-Proto}",
        hsts=None,
    )
    return (
        _caddy_header(f"plain HTTP for {config.domain} (TLS terminated upstream, if at all)")
        + "\n{\n    auto_https off\n}\n\n"
        + _caddy_site(":80", body)
    )


# ---------------------------------------------------------------------------
# compose.prod.yaml
# ---------------------------------------------------------------------------


def _compose(config: DeploymentConfig, *, title: str, ports: list[str], cert_volume: str | None) -> str:
    name = config.service_name
    port_lines = "\n".join(f'              - "{p}"' for p in ports)
    cert_line = f"\n              - {cert_volume}" if cert_volume else ""
    return dedent(f"""
        # =============================================================
        # Docker Compose: {title}
        # Generated by asfa-deploy.
        # =============================================================

        services:

          caddy:
            image: caddy:latest
            container_name: {name}_caddy
            restart: unless-stopped
            ports:
{port_lines}
            volumes:
              - ./caddy/Caddyfile:/etc/caddy/Caddyfile:ro{cert_line}
              - caddy_data:/data
              - caddy_config:/config
              - caddy_logs:/var/log/caddy
            networks:
              - {name}_net
            depends_on:
              - web

          web:
            image: {config.image}
            container_name: {name}_web
            restart: unless-stopped
            env_file:
              - .env.docker
            environment:
              - PYTHONUNBUFFERED=1
            depends_on:
              - redis
            networks:
              - {name}_net
            expose:
              - "8000"

          redis:
            image: redis:7-alpine
            container_name: {name}_redis
            restart: unless-stopped
            volumes:
              - redis_data:/data
            networks:
              - {name}_net

        volumes:
          caddy_data:
          caddy_config:
          caddy_logs:
          redis_data:

        networks:
          {name}_net:
            driver: bridge
    """).lstrip()


def compose_letsencrypt(config: DeploymentConfig, layout: Layout, secrets: dict[str, str]) -> str:
    return _compose(
        config,
        title="Caddy (certbot certificates) + Django + Redis",
        ports=["80:80", "443:443", "443:443/udp"],
        cert_volume=f"{layout.letsencrypt_dir}:{CONTAINER_LETSENCRYPT_DIR}:ro",
    )


def compose_cloudflare_origin(config: DeploymentConfig, layout: Layout, secrets: dict[str, str]) -> str:
    return _compose(
        config,
        title="Caddy (Cloudflare origin certificate) + Django + Redis",
        ports=["80:80", "443:443", "443:443/udp"],
        cert_volume=f"./caddy/certs:{CONTAINER_CERTS_DIR}:ro",
    )


def compose_http_only(config: DeploymentConfig, layout: Layout, secrets: dict[str, str]) -> str:
    return _compose(
        config,
        title="Caddy (HTTP only) + Django + Redis",
        ports=["80:80"],
        cert_volume=None,
    )


# ---------------------------------------------------------------------------
# .env.docker
# ---------------------------------------------------------------------------


def _env_file(config: DeploymentConfig, secrets: dict[str, str], *, scheme: str) -> str:
    d = config.domain
    secret_key = secrets.get("SECRET_KEY") or placeholder("SECRET_KEY")
    ssl_redirect = "True" if scheme == "https" else "False"
    u = placeholder
    return dedent(f"""
        # ============================================
        # Django Core Settings
        # ============================================
        SECRET_KEY={secret_key}
        DEBUG=False
        ENVIRONMENT=production
        ALLOWED_HOSTS=localhost,{d},www.{d}
        CSRF_ORIGINS={scheme}://{d},{scheme}://www.{d}
        SECURE_SSL_REDIRECT={ssl_redirect}

        # ============================================
        # Database Configuration
        # ============================================
        DATABASE_URL={u("DATABASE_URL")}
        ANALYTICS_DATABASE_URL={u("ANALYTICS_DATABASE_URL")}

        # ============================================
        # Redis
        # ============================================
        REDIS_URL=redis://redis:6379
        REDIS_HOST=redis
        REDIS_PASSWORD=

        # ============================================
        # Site
        # ============================================
        SITE_ID=1
        SITE_NAME={d}
        SITE_URL={scheme}://{d}

        # ============================================
        # Email
        # ============================================
        DEFAULT_FROM_EMAIL=noreply@{d}
        EMAIL_HOST={u("EMAIL_HOST")}
        EMAIL_HOST_USER={u("EMAIL_HOST_USER")}
        EMAIL_HOST_PASSWORD={u("EMAIL_HOST_PASSWORD")}
        EMAIL_PORT=587

        # ============================================
        # Cloudflare R2 Storage (also the backup target)
        # ============================================
        CLOUDFLARE_R2_ACCESS_KEY={u("CLOUDFLARE_R2_ACCESS_KEY")}
        CLOUDFLARE_R2_SECRET_KEY={u("CLOUDFLARE_R2_SECRET_KEY")}
        CLOUDFLARE_R2_BUCKET={u("CLOUDFLARE_R2_BUCKET")}
        CLOUDFLARE_R2_BUCKET_ENDPOINT={u("CLOUDFLARE_R2_BUCKET_ENDPOINT")}
        CLOUDFLARE_R2_PUBLIC_CUSTOM_DOMAIN={scheme}://cdn.{d}

        # ============================================
        # Admin
        # ============================================
        ADMIN_NAME={u("ADMIN_NAME")}
        ADMIN_EMAIL=admin@{d}
        PYTHON_VERSION=3.13.5
    """).lstrip()


def env_letsencrypt(config: DeploymentConfig, layout: Layout, secrets: dict[str, str]) -> str:
    return _env_file(config, secrets, scheme="https")


def env_cloudflare_origin(config: DeploymentConfig, layout: Layout, secrets: dict[str, str]) -> str:
    return _env_file(config, secrets, scheme="https")


def env_http_only(config: DeploymentConfig, layout: Layout, secrets: dict[str, str]) -> str:
    return _env_file(config, secrets, scheme="http")


# ---------------------------------------------------------------------------
# systemd unit
# ---------------------------------------------------------------------------


def _systemd_unit(config: DeploymentConfig, layout: Layout, *, mode_label: str) -> str:
    compose = "/usr/bin/docker compose -f compose.prod.yaml"
    return dedent(f"""
        [Unit]
        Description={config.service_name} Django application (Caddy + Django + Redis, {mode_label})
        Requires=docker.service
        After=docker.service network-online.target
        Wants=network-online.target

        [Service]
        Type=oneshot
        RemainAfterExit=yes
        WorkingDirectory={layout.app_dir}
        ExecStart={compose} up -d --remove-orphans
        ExecStop={compose} down
        ExecReload={compose} restart
        TimeoutStartSec=900

        [Install]
        WantedBy=multi-user.target
    """).lstrip()


def unit_letsencrypt(config: DeploymentConfig, layout: Layout, secrets: dict[str, str]) -> str:
    return _systemd_unit(config, layout, mode_label="HTTPS via Let's Encrypt")


def unit_cloudflare_origin(config: DeploymentConfig, layout: Layout, secrets: dict[str, str]) -> str:
    return _systemd_unit(config, layout, mode_label="HTTPS via Cloudflare origin certificate")


def unit_http_only(config: DeploymentConfig, layout: Layout, secrets: dict[str, str]) -> str:
    return _systemd_unit(config, layout, mode_label="HTTP only")


VARIANTS: dict[tuple[ArtifactKind, SSLMode], Template] = {
    ("env-file", "letsencrypt"): env_letsencrypt,
    ("env-file", "cloudflare-origin"): env_cloudflare_origin,
    ("env-file", "http-only"): env_http_only,
    ("reverse-proxy", "letsencrypt"): caddyfile_letsencrypt,
    ("reverse-proxy", "cloudflare-origin"): caddyfile_cloudflare_origin,
    ("reverse-proxy", "http-only"): caddyfile_http_only,
    ("compose", "letsencrypt"): compose_letsencrypt,
    ("compose", "cloudflare-origin"): compose_cloudflare_origin,
    ("compose", "http-only"): compose_http_only,
    ("systemd-unit", "letsencrypt"): unit_letsencrypt,
    ("systemd-unit", "cloudflare-origin"): unit_cloudflare_origin,
    ("systemd-unit", "http-only"): unit_http_only,
}
