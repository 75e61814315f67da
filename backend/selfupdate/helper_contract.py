"""
Parameters handed to the self-update helper container.

The helper outlives this process, so everything it needs travels as plain
environment variables, never as a handle into this process:

    HELPER_CONTRACT_VERSION=1
    OLD_CONTAINER_ID=<id>
    NEW_CONTAINER_ID=<id>
    CONTAINER_NAME=<final name>
    NETWORKS=<name> <name> ...
    NETWORK_OPTS_<safe name>=--ip X --ip6 Y --alias A --link L --gw-priority N

``<safe name>`` is the network name with every character outside
``[A-Za-z0-9_]`` replaced by an underscore.
"""

import argparse
import re
import shlex
from dataclasses import dataclass
from typing import Dict, List, Mapping, Tuple

from updates.snapshot import NetworkAttachment

CONTRACT_VERSION = 1

VERSION_VAR = 'HELPER_CONTRACT_VERSION'
OLD_ID_VAR = 'OLD_CONTAINER_ID'
NEW_ID_VAR = 'NEW_CONTAINER_ID'
NAME_VAR = 'CONTAINER_NAME'
NETWORKS_VAR = 'NETWORKS'
NETWORK_OPTS_PREFIX = 'NETWORK_OPTS_'


class ContractError(ValueError):
    """Helper environment is missing or malformed."""


def safe_network_var(network_name: str) -> str:
    return NETWORK_OPTS_PREFIX + re.sub(r'[^A-Za-z0-9_]', '_', network_name)


def format_network_opts(attachment: NetworkAttachment) -> str:
    opts = []
    if attachment.ipv4:
        opts += ['--ip', attachment.ipv4]
    if attachment.ipv6:
        opts += ['--ip6', attachment.ipv6]
    for alias in attachment.aliases:
        opts += ['--alias', alias]
    for link in attachment.links:
        opts += ['--link', link]
    if attachment.gateway_priority:
        opts += ['--gw-priority', str(attachment.gateway_priority)]
    return ' '.join(shlex.quote(opt) for opt in opts)


def _opts_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='network-opts', add_help=False, exit_on_error=False)
    parser.add_argument('--ip')
    parser.add_argument('--ip6')
    parser.add_argument('--alias', action='append', default=[])
    parser.add_argument('--link', action='append', default=[])
    parser.add_argument('--gw-priority', type=int)
    return parser


def parse_network_opts(network_name: str, raw: str) -> NetworkAttachment:
    try:
        args, unknown = _opts_parser().parse_known_args(shlex.split(raw or ''))
    except (argparse.ArgumentError, ValueError) as e:
        raise ContractError(f"Bad options for network {network_name}: {e}")
    if unknown:
        raise ContractError(f"Unknown options for network {network_name}: {' '.join(unknown)}")
    return NetworkAttachment(
        network_name=network_name,
        aliases=tuple(args.alias),
        ipv4=args.ip,
        ipv6=args.ip6,
        gateway_priority=args.gw_priority,
        links=tuple(args.link),
    )


@dataclass(frozen=True)
class HelperContract:
    old_container_id: str
    new_container_id: str
    container_name: str
    networks: Tuple[NetworkAttachment, ...] = ()
    version: int = CONTRACT_VERSION

    def to_env(self) -> List[str]:
        """``KEY=value`` strings for the helper's Env."""
        env = [
            f"{VERSION_VAR}={self.version}",
            f"{OLD_ID_VAR}={self.old_container_id}",
            f"{NEW_ID_VAR}={self.new_container_id}",
            f"{NAME_VAR}={self.container_name}",
        ]
        if self.networks:
            env.append(f"{NETWORKS_VAR}={' '.join(n.network_name for n in self.networks)}")
        for attachment in self.networks:
            opts = format_network_opts(attachment)
            if opts:
                env.append(f"{safe_network_var(attachment.network_name)}={opts}")
        return env

    @classmethod
    def from_env(cls, environ: Mapping[str, str]) -> 'HelperContract':
        """
        Raises:
            ContractError: Unsupported version or missing values
        """
        version = environ.get(VERSION_VAR, str(CONTRACT_VERSION))
        if version != str(CONTRACT_VERSION):
            raise ContractError(f"Unsupported helper contract version {version}")

        values: Dict[str, str] = {}
        for var in (OLD_ID_VAR, NEW_ID_VAR, NAME_VAR):
            value = (environ.get(var) or '').strip()
            if not value:
                raise ContractError(f"{var} is required")
            values[var] = value

        networks = tuple(
            parse_network_opts(name, environ.get(safe_network_var(name), ''))
            for name in (environ.get(NETWORKS_VAR) or '').split()
        )
        return cls(
            old_container_id=values[OLD_ID_VAR],
            new_container_id=values[NEW_ID_VAR],
            container_name=values[NAME_VAR],
            networks=networks,
            version=int(version),
        )
