"""Expand CIDR ranges into ``host:port`` candidate endpoints.

IPv4 networks are enumerated in full, skipping the network and broadcast
addresses. IPv6 networks are walked sequentially from their first address
and capped at ``V6_SAMPLE_CAP`` per range, since even a /64 is far too
large to enumerate.
"""

import ipaddress
import random
from enum import IntEnum

import logutil

# MASQUE endpoints published for Cloudflare WARP
DEFAULT_V4_RANGES = ["162.159.198.0/24"]
DEFAULT_V6_RANGES = ["2606:4700:103::/64"]
DEFAULT_PORTS = ["443"]

V6_SAMPLE_CAP = 1024


class IPVersion(IntEnum):
    ANY = 0
    V4 = 4
    V6 = 6


def load_ranges(path: str) -> list[str]:
    """Load CIDR ranges from a file, one per line, ``#`` for comments."""
    ranges = []
    with open(path) as f:
        for line in f:
            line = line.split("#", 1)[0].strip()
            if line:
                ranges.append(line)
    return ranges


def format_endpoint(host, port) -> str:
    """Join host and port, bracketing IPv6 literals."""
    host = str(host)
    if ":" in host and not host.startswith("["):
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def split_host_port(endpoint: str) -> tuple[str, int]:
    """Split ``host:port`` or ``[v6]:port`` into an unbracketed host and port."""
    host, sep, port = endpoint.rpartition(":")
    if not sep or not host or not port.isdigit():
        raise ValueError(f"missing port in address {endpoint!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    elif ":" in host:
        raise ValueError(f"too many colons in address {endpoint!r}")
    return host, int(port)


def is_ip_literal(host: str) -> bool:
    try:
        ipaddress.ip_address(host.strip("[]"))
    except ValueError:
        return False
    return True


def _parse_network(cidr: str, version: int):
    try:
        net = ipaddress.ip_network(cidr.strip(), strict=False)
    except ValueError as e:
        logutil.warn("bad cidr", cidr=cidr, err=str(e))
        return None
    if net.version != version:
        logutil.warn("bad cidr", cidr=cidr, err=f"not an IPv{version} network")
        return None
    return net


def _pick_port(ports: list[str], rng: random.Random) -> str:
    if len(ports) == 1:
        return ports[0]
    return rng.choice(ports)


def build_candidates(
    version: IPVersion,
    v4_cidrs: list[str],
    v6_cidrs: list[str],
    ports: list[str],
    rng: random.Random | None = None,
) -> list[str]:
    """Expand IPv4/IPv6 CIDR ranges into ``host:port`` endpoints.

    Args:
        version: Which families to expand
        v4_cidrs: IPv4 CIDR strings, expanded in order
        v6_cidrs: IPv6 CIDR strings, expanded in order
        ports: Port strings; one is picked at random per host when
            several are given
        rng: Randomness source for port picks
    """
    rng = rng or random.Random()
    ports = [str(p) for p in ports] or list(DEFAULT_PORTS)
    out: list[str] = []

    if version in (IPVersion.ANY, IPVersion.V4):
        for cidr in v4_cidrs:
            net = _parse_network(cidr, 4)
            if net is None:
                continue
            first = int(net.network_address) + 1
            last = int(net.broadcast_address) - 1
            for value in range(first, last + 1):
                ip = ipaddress.IPv4Address(value)
                out.append(format_endpoint(ip, _pick_port(ports, rng)))

    if version in (IPVersion.ANY, IPVersion.V6):
        for cidr in v6_cidrs:
            net = _parse_network(cidr, 6)
            if net is None:
                continue
            start = int(net.network_address)
            count = min(net.num_addresses, V6_SAMPLE_CAP)
            for offset in range(count):
                ip = ipaddress.IPv6Address(start + offset)
                out.append(format_endpoint(ip, _pick_port(ports, rng)))

    return out


def shuffle_candidates(
    candidates: list[str], rng: random.Random | None = None,
) -> list[str]:
    """Return a shuffled copy of ``candidates``."""
    shuffled = list(candidates)
    (rng or random.Random()).shuffle(shuffled)
    return shuffled


def sample_cidr(cidr: str, n: int, rng: random.Random | None = None) -> list:
    """Pick ``n`` random addresses inside ``cidr``.

    IPv4 picks avoid the network and broadcast address when the network has
    room for hosts; otherwise the network address itself is returned.
    """
    rng = rng or random.Random()
    net = ipaddress.ip_network(cidr.strip(), strict=False)
    base = int(net.network_address)
    out = []

    for _ in range(n):
        if net.version == 4:
            size = net.num_addresses - 1
            if size <= 2:
                out.append(net.network_address)
                continue
            value = base + 1 + rng.randrange(size - 1)
            out.append(ipaddress.IPv4Address(value))
        else:
            value = base + rng.randrange(net.num_addresses)
            out.append(ipaddress.IPv6Address(value))
    return out
