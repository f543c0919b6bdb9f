"""usque config.json rewriting, last-run state, endpoint/bind parsing.

Only the endpoint keys of config.json are ever rewritten; everything the
registration step wrote is passed through untouched.
"""

import ipaddress
import json
import os
from dataclasses import asdict, dataclass

import logutil
from errors import InvalidEndpointError

DEFAULT_CONFIG_FILE = "./config.json"
DEFAULT_STATE_FILE = "./state.json"
DEFAULT_BIND = "127.0.0.1:1080"


@dataclass
class State:
    endpoint: str = ""
    socks: str = ""


def validate_port(port: str) -> str:
    try:
        n = int(port)
    except (TypeError, ValueError):
        n = 0
    if not 1 <= n <= 65535:
        raise InvalidEndpointError(f"invalid port {port!r}")
    return str(n)


def split_bind(bind: str) -> tuple[str, str]:
    """Split ``IP:Port`` for the SOCKS listener."""
    parts = bind.split(":")
    if len(parts) != 2:
        raise InvalidEndpointError("--bind must be in format IP:Port")
    return parts[0], validate_port(parts[1])


def parse_endpoint(ep: str) -> tuple[ipaddress.IPv4Address | ipaddress.IPv6Address, str]:
    """Parse ``ip``, ``ip:port`` or ``[ipv6]:port``; port is '' when absent."""
    ep = ep.strip()
    if ep.startswith("["):
        host, sep, port = ep[1:].partition("]:")
        if not sep:
            raise InvalidEndpointError("IPv6 with port must be in the form [IPv6]:Port")
        return _parse_ip(host), validate_port(port)

    try:
        return ipaddress.ip_address(ep), ""
    except ValueError:
        pass

    if ep.count(":") >= 2:
        raise InvalidEndpointError("IPv6 with port must be in the form [IPv6]:Port")
    host, sep, port = ep.partition(":")
    if not sep:
        raise InvalidEndpointError("could not parse endpoint")
    return _parse_ip(host), validate_port(port)


def _parse_ip(host: str):
    try:
        return ipaddress.ip_address(host)
    except ValueError:
        raise InvalidEndpointError("invalid IP in endpoint") from None


def load_config(path: str = DEFAULT_CONFIG_FILE) -> dict:
    """Read config.json; a missing or unreadable file yields an empty config."""
    if not os.path.exists(path):
        return {}
    with open(path) as f:
        try:
            data = json.load(f)
        except ValueError as e:
            logutil.warn("config unreadable, starting empty", path=path, err=str(e))
            return {}
    if not isinstance(data, dict):
        logutil.warn("config is not a JSON object, starting empty", path=path)
        return {}
    return data


def write_config(path: str, cfg: dict) -> None:
    with open(path, "w") as f:
        json.dump(cfg, f, indent=2)


def apply_endpoint(cfg: dict, endpoint: str) -> str:
    """Point ``cfg`` at ``endpoint``; returns the family label ("IPv4"/"IPv6")."""
    ip, port = parse_endpoint(endpoint)
    family = "v4" if ip.version == 4 else "v6"
    cfg[f"endpoint_{family}"] = str(ip)
    if port:
        cfg[f"endpoint_{family}_port"] = port
    return f"IPv{ip.version}"


def set_endpoint(path: str, endpoint: str) -> str:
    """Rewrite only the endpoint keys of the config file at ``path``."""
    cfg = load_config(path)
    family = apply_endpoint(cfg, endpoint)
    write_config(path, cfg)
    return family


def save_state(state: State, path: str = DEFAULT_STATE_FILE) -> None:
    with open(path, "w") as f:
        json.dump(asdict(state), f, indent=2)


def load_state(path: str = DEFAULT_STATE_FILE) -> State:
    with open(path) as f:
        data = json.load(f)
    return State(endpoint=data.get("endpoint", ""), socks=data.get("socks", ""))
