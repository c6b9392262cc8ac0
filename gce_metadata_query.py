#!/usr/bin/env python3
"""
Google Compute Engine Instance Metadata Query Tool

This script queries the GCE metadata server and prints selected instance
attributes as "label: value" lines:
1. A full report of every known attribute
2. Individual attributes selected by command-line flags
3. "not available" for any attribute the metadata server cannot provide

Usage:
    python gce_metadata_query.py                 # Report every attribute
    python gce_metadata_query.py -i -z           # Instance id and zone
    python gce_metadata_query.py --disks         # Attached disks
"""

import argparse
import fnmatch
import json
import logging
import socket
import sys
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, TextIO, Tuple, Union
from urllib.parse import urljoin

import requests

BASE_URL = "http://metadata.google.internal/computeMetadata/v1/"
METADATA_HEADERS = {"Metadata-Flavor": "Google"}
DEFAULT_TIMEOUT = 5
PROBE_TIMEOUT = 5
NOT_AVAILABLE = "not available"
# Not "*iam.gserviceaccount.com": the default compute account lives under
# developer.gserviceaccount.com and must match too.
SERVICE_ACCOUNT_PATTERN = "*gserviceaccount.com"
HELP_FLAGS = ("--help", "--h")
NETWORK_INTERFACES = "instance/network-interfaces/?recursive=true&alt=json"

log = logging.getLogger(__name__)


class MetadataError(Exception):
    """Base class for errors raised by the metadata query tool."""


class MetadataServiceUnreachable(MetadataError):
    """The metadata server did not answer the reachability probe."""


class InvalidSelectorError(MetadataError):
    """An unrecognized token was given on the command line."""


class MetadataClient:
    """Client for querying the GCE metadata server"""

    def __init__(
        self,
        base_url: str = BASE_URL,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url
        self.timeout = timeout
        self.session = session if session is not None else requests.Session()
        self.session.headers.update(METADATA_HEADERS if headers is None else headers)

    def check_environment(self) -> None:
        """Probe the metadata server root, raising if it cannot be reached."""
        try:
            response = self.session.get(self.base_url, timeout=PROBE_TIMEOUT)
            response.raise_for_status()
        except requests.RequestException as e:
            raise MetadataServiceUnreachable(
                "the GCE metadata server is unreachable; "
                "this tool must be run inside a Google Compute Engine instance "
                f"({e})"
            ) from e

    def fetch(self, path: str) -> Optional[str]:
        """Return the body at ``path`` or None if the request failed."""
        url = urljoin(self.base_url, path)
        try:
            response = self.session.get(url, timeout=self.timeout)
            response.raise_for_status()
            return response.text
        except requests.RequestException as e:
            log.debug("Error querying %s: %s", path, e)
            return None


# Post-processing rules. Each takes the raw body and returns display text,
# or None when the value is absent.

def raw(value: str) -> Optional[str]:
    return value


def last_path_segment(value: str) -> Optional[str]:
    return value.rstrip("/").rsplit("/", 1)[-1]


def first_hostname_label(value: str) -> Optional[str]:
    return value.split(".", 1)[0]


def json_field(*path: Union[int, str]) -> Callable[[str], Optional[str]]:
    """Build a rule that extracts the field at ``path`` from a JSON body."""

    def extract(value: str) -> Optional[str]:
        try:
            node = json.loads(value)
        except ValueError:
            return None
        for key in path:
            if isinstance(key, int):
                if not isinstance(node, list) or len(node) <= key:
                    return None
            elif not isinstance(node, dict) or key not in node:
                return None
            node = node[key]
        if node is None or isinstance(node, (dict, list)):
            return None
        return str(node)

    return extract


def join_list(sep: str) -> Callable[[str], Optional[str]]:
    """Build a rule that joins a JSON list of strings with ``sep``."""

    def join(value: str) -> Optional[str]:
        try:
            items = json.loads(value)
        except ValueError:
            return None
        if not isinstance(items, list):
            return None
        return sep.join(str(item) for item in items)

    return join


def service_account(value: str) -> Optional[str]:
    """Pick the first service account email out of a directory listing."""
    for line in value.splitlines():
        account = line.strip().rstrip("/")
        if fnmatch.fnmatch(account, SERVICE_ACCOUNT_PATTERN):
            return account
    return None


def parse_listing(content: str) -> List[str]:
    """Parse a directory listing like ``0/\\n1/\\n`` into its entries."""
    return [line.strip().rstrip("/") for line in content.splitlines() if line.strip()]


# Where a selector's value comes from.
METADATA = "metadata"
HOSTNAME = "hostname"
DISKS = "disks"


@dataclass(frozen=True)
class Selector:
    name: str
    short: str
    path: Optional[str] = None
    rule: Callable[[str], Optional[str]] = raw
    source: str = METADATA

    @property
    def label(self) -> str:
        return self.name

    @property
    def flags(self) -> Tuple[str, str]:
        return f"-{self.short}", f"--{self.name}"


# Listed in bulk report order.
SELECTORS: Tuple[Selector, ...] = (
    Selector("project-id", "p", "project/project-id"),
    Selector("image", "a", "instance/image", last_path_segment),
    Selector("instance-name", "n", "instance/hostname", first_hostname_label),
    Selector("instance-id", "i", "instance/id"),
    Selector("instance-type", "t", "instance/machine-type", last_path_segment),
    Selector("local-hostname", "h", source=HOSTNAME),
    Selector("local-ipv4", "o", NETWORK_INTERFACES, json_field(0, "ip")),
    Selector("public-ipv4", "v", NETWORK_INTERFACES,
             json_field(0, "accessConfigs", 0, "externalIp")),
    Selector("mac", "m", NETWORK_INTERFACES, json_field(0, "mac")),
    Selector("availability-zone", "z", "instance/zone", last_path_segment),
    Selector("description", "e", "instance/description"),
    Selector("disks", "d", "instance/disks/", source=DISKS),
    Selector("service-account", "s", "instance/service-accounts/", service_account),
    Selector("instance-template", "l", "instance/attributes/instance-template",
             last_path_segment),
    Selector("created-by", "c", "instance/attributes/created-by", last_path_segment),
    Selector("tags", "g", "instance/tags?alt=json", join_list(", ")),
    Selector("user-data", "u", "instance/attributes/user-data"),
)

SELECTORS_BY_NAME: Dict[str, Selector] = {s.name: s for s in SELECTORS}


@dataclass
class DiskEntry:
    index: Optional[str]
    device_name: Optional[str]
    type: Optional[str]


class MetadataQueryTool:
    """Fetches selected attributes and prints them as labeled lines."""

    def __init__(
        self,
        client: MetadataClient,
        hostname_func: Callable[[], str] = socket.gethostname,
        out: Optional[TextIO] = None,
    ):
        self.client = client
        self.hostname_func = hostname_func
        self.out = out

    def _write(self, text: str, end: str = "\n") -> None:
        print(text, end=end, file=self.out if self.out is not None else sys.stdout, flush=True)

    def lookup(self, selector: Selector) -> Optional[str]:
        """Resolve one non-disk selector to its display value."""
        if selector.source == HOSTNAME:
            try:
                value = self.hostname_func()
            except OSError as e:
                log.debug("Could not read local hostname: %s", e)
                return None
        else:
            value = self.client.fetch(selector.path)
        if value is None:
            return None
        value = selector.rule(value)
        return value if value else None

    def list_disks(self) -> Optional[List[DiskEntry]]:
        """Enumerate attached disks in listing order, or None if unavailable."""
        base = SELECTORS_BY_NAME["disks"].path
        listing = self.client.fetch(base)
        if listing is None:
            return None
        disks = []
        for index in parse_listing(listing):
            prefix = f"{base}{index}/"
            disks.append(DiskEntry(
                index=self.client.fetch(prefix + "index") or None,
                device_name=self.client.fetch(prefix + "device-name") or None,
                type=self.client.fetch(prefix + "type") or None,
            ))
        return disks

    def print_disks(self, selector: Selector) -> None:
        disks = self.list_disks()
        if not disks:
            self._write(f"{selector.label}: {NOT_AVAILABLE}")
            return
        self._write(f"{selector.label}:")
        for disk in disks:
            self._write(f"  index: {disk.index or NOT_AVAILABLE}")
            self._write(f"    device-name: {disk.device_name or NOT_AVAILABLE}")
            self._write(f"    device-type: {disk.type or NOT_AVAILABLE}")

    def print_selector(self, selector: Selector) -> None:
        if selector.source == DISKS:
            self.print_disks(selector)
            return
        self._write(f"{selector.label}: ", end="")
        value = self.lookup(selector)
        self._write(value if value is not None else NOT_AVAILABLE)

    def run(self, selectors: Sequence[Selector]) -> None:
        for selector in selectors:
            self.print_selector(selector)

    def print_all(self) -> None:
        self.run(SELECTORS)


class SelectorParser(argparse.ArgumentParser):
    """ArgumentParser that reports bad tokens as InvalidSelectorError."""

    def error(self, message):
        self.print_help()
        raise InvalidSelectorError(message)


def build_parser() -> SelectorParser:
    parser = SelectorParser(
        prog="gce-metadata-query",
        description="Query Google Compute Engine instance metadata",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        add_help=False,
        allow_abbrev=False,
        epilog="""
With no options every attribute is reported.

Examples:
  %(prog)s                       # Report every attribute
  %(prog)s -i                    # Get instance id
  %(prog)s --availability-zone   # Get zone
  %(prog)s -p -n -d              # Project id, instance name and disks
        """
    )

    parser.add_argument(
        '--help', '--h',
        action='store_true',
        help='Show this help message and exit'
    )

    parser.add_argument(
        '--all',
        dest='selectors',
        action='append_const',
        const='all',
        help='Report every attribute (same as no options)'
    )

    for selector in SELECTORS:
        parser.add_argument(
            *selector.flags,
            dest='selectors',
            action='append_const',
            const=selector.name,
            help=f'Print {selector.label}'
        )

    return parser


def resolve_selectors(names: Optional[Sequence[str]]) -> List[Selector]:
    """Turn parsed selector names into Selectors, in command-line order."""
    if not names:
        return list(SELECTORS)
    resolved: List[Selector] = []
    for name in names:
        if name == 'all':
            resolved.extend(SELECTORS)
        else:
            resolved.append(SELECTORS_BY_NAME[name])
    return resolved


def parse_selectors(argv: Sequence[str], parser: Optional[SelectorParser] = None) -> Optional[List[Selector]]:
    """
    Parse ``argv`` into the selectors to report.

    Returns None when help was requested. Raises InvalidSelectorError (after
    printing help) for any unrecognized token.
    """
    parser = parser or build_parser()
    # Help wins over every other token, including ones argparse rejects outright.
    if any(arg in HELP_FLAGS for arg in argv):
        parser.print_help()
        return None
    args, extras = parser.parse_known_args(argv)
    if extras:
        parser.error(f"unrecognized arguments: {' '.join(extras)}")
    return resolve_selectors(args.selectors)


def main(argv: Optional[Sequence[str]] = None, client: Optional[MetadataClient] = None,
         hostname_func: Callable[[], str] = socket.gethostname) -> int:
    if not logging.getLogger().handlers:
        logging.basicConfig(level=logging.WARNING, stream=sys.stderr,
                            format="%(levelname)s: %(message)s")

    try:
        selectors = parse_selectors(sys.argv[1:] if argv is None else argv)
    except InvalidSelectorError:
        return 1
    if selectors is None:
        return 0

    client = client or MetadataClient()

    try:
        client.check_environment()
        MetadataQueryTool(client, hostname_func=hostname_func).run(selectors)
    except MetadataServiceUnreachable as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nOperation cancelled by user", file=sys.stderr)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
