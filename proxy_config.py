import ipaddress
import logging
import os
from dataclasses import dataclass
from typing import Optional

from yarl import URL

from errors import InvalidConfig

VERSION = "1.3.0"
PROGRAM_NAME = "daytona-drizzle-proxy"

STUDIO_CDN_ORIGIN = "https://local.drizzle.studio"
STUDIO_CDN_HOST = "local.drizzle.studio"

LISTEN_HOST = "0.0.0.0"
DEFAULT_PORT = 8080
DEFAULT_TARGET = "http://localhost:4983"


def _env_flag(name: str) -> Optional[bool]:
    value = os.environ.get(name)
    if value is None or value == "":
        return None
    return value.lower() in ("1", "true", "yes", "on")


ENV_PORT = os.environ.get("PORT", str(DEFAULT_PORT))
ENV_TARGET = os.environ.get("PROXY_TARGET", DEFAULT_TARGET)
ENV_INSECURE_TLS = _env_flag("PROXY_INSECURE_TLS")
DEBUG = bool(_env_flag("PROXY_DEBUG"))


def configure_logging():
    logging.basicConfig(level=logging.DEBUG if DEBUG else logging.INFO)


def parse_port(value) -> int:
    try:
        port = int(str(value).strip())
    except (TypeError, ValueError):
        raise InvalidConfig(f"Invalid port: {value}")
    if port < 1 or port > 65535:
        raise InvalidConfig(f"Invalid port: {value}")
    return port


def parse_target(value) -> str:
    if not value:
        raise InvalidConfig("Missing target URL")
    try:
        url = URL(value)
    except (TypeError, ValueError):
        raise InvalidConfig(f"Invalid target URL: {value}")
    if url.scheme not in ("http", "https") or not url.host:
        raise InvalidConfig(f"Invalid target URL: {value}")
    return value


def is_local_host(host: Optional[str]) -> bool:
    """Hosts that belong to the local development machine."""
    if not host:
        return False
    host = host.strip("[]").lower()
    if host == "localhost" or host.endswith(".localhost") or host == STUDIO_CDN_HOST:
        return True
    try:
        return ipaddress.ip_address(host).is_loopback
    except ValueError:
        return False


@dataclass(frozen=True)
class ProxyConfig:
    port: int
    target: str
    # None means relax certificate checks for local hosts only
    insecure_tls: Optional[bool] = None

    @classmethod
    def from_values(cls, port, target, insecure_tls: Optional[bool] = None) -> "ProxyConfig":
        return cls(
            port=parse_port(port),
            target=parse_target(target),
            insecure_tls=insecure_tls,
        )

    def verify_tls_for(self, host: Optional[str]) -> bool:
        if self.insecure_tls is None:
            return not is_local_host(host)
        return not self.insecure_tls
