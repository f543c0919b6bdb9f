"""Interactive TUI wizard using questionary + rich.

Guides users through connecting to a known endpoint or scanning for one,
and returns the resulting RunOptions.
"""

import questionary
from questionary import Style
from rich.console import Console

from config_store import DEFAULT_BIND, parse_endpoint, split_bind
from errors import InvalidEndpointError
from masque import RunOptions
from rangeip import IPVersion

console = Console()

# Custom questionary style
STYLE = Style([
    ("qmark", "fg:ansicyan bold"),
    ("question", "bold"),
    ("answer", "fg:ansicyan"),
    ("pointer", "fg:ansicyan bold"),
    ("highlighted", "fg:ansicyan bold"),
    ("selected", "fg:ansigreen"),
    ("separator", "fg:ansibrightblack"),
    ("instruction", "fg:ansibrightblack"),
])

BANNER = """
╔══════════════════════════════════════════════════════════╗
║                   masque-plus                            ║
║         MASQUE Endpoint Scanner for usque                ║
╚══════════════════════════════════════════════════════════╝
"""


def show_banner() -> None:
    """Display the ASCII art banner."""
    console.print(BANNER, style="bright_cyan", markup=False)


def ask_mode() -> str | None:
    """Ask what the user wants to do."""
    return questionary.select(
        "What would you like to do?",
        choices=[
            questionary.Choice("Scan - Find a working endpoint automatically", value="scan"),
            questionary.Choice("Connect - Use an endpoint I already know", value="endpoint"),
            questionary.Choice("Exit", value="exit"),
        ],
        style=STYLE,
    ).ask()


def _valid_endpoint(text: str) -> bool | str:
    try:
        parse_endpoint(text)
    except InvalidEndpointError as e:
        return str(e)
    return True


def _valid_bind(text: str) -> bool | str:
    try:
        split_bind(text)
    except InvalidEndpointError as e:
        return str(e)
    return True


def ask_endpoint() -> str | None:
    return questionary.text(
        "Endpoint (IP, IP:Port or [IPv6]:Port):",
        validate=_valid_endpoint,
        style=STYLE,
    ).ask()


def ask_bind() -> str | None:
    return questionary.text(
        "Local SOCKS bind address:",
        default=DEFAULT_BIND,
        validate=_valid_bind,
        style=STYLE,
    ).ask()


def ask_ip_version() -> IPVersion:
    answer = questionary.select(
        "Which address family should be scanned?",
        choices=[
            questionary.Choice("Both IPv4 and IPv6", value=IPVersion.ANY),
            questionary.Choice("IPv4 only", value=IPVersion.V4),
            questionary.Choice("IPv6 only", value=IPVersion.V6),
        ],
        style=STYLE,
    ).ask()
    return answer if answer is not None else IPVersion.ANY


def ask_scan_max() -> int:
    answer = questionary.select(
        "How many candidates to try at most?",
        choices=[
            questionary.Choice("20 (quick)", value="20"),
            questionary.Choice("100 (thorough)", value="100"),
            questionary.Choice("All", value="0"),
        ],
        style=STYLE,
    ).ask()
    return int(answer) if answer else 0


def ask_precheck() -> bool:
    return questionary.confirm(
        "QUIC-probe each candidate before launching usque? (faster scans)",
        default=True,
        style=STYLE,
    ).ask()


def ask_warp_check() -> bool:
    return questionary.confirm(
        "Verify warp=on through the proxy once connected?",
        default=False,
        style=STYLE,
    ).ask()


def run_wizard() -> RunOptions | None:
    """Main wizard entry point. Returns None when the user backs out."""
    show_banner()

    mode = ask_mode()
    if mode in (None, "exit"):
        return None

    bind = ask_bind()
    if bind is None:
        return None

    if mode == "endpoint":
        endpoint = ask_endpoint()
        if endpoint is None:
            return None
        return RunOptions(endpoint=endpoint, bind=bind)

    return RunOptions(
        scan=True,
        bind=bind,
        version=ask_ip_version(),
        scan_max=ask_scan_max(),
        ping=bool(ask_precheck()),
        warp_check=bool(ask_warp_check()),
    )
