"""
Self-update helper.

Runs in its own short-lived container (``python -m selfupdate.helper``) after
the orchestrator handed over. Everything it needs comes from the helper
contract in its environment; it never talks to the orchestrator.

    stop old -> remove old -> rename new -> reconnect networks -> start new

Until the old container is removed a failure restarts it, so the service
stays up on the old version. After that the only way is forward.
"""

import asyncio
import logging
import os
import sys
from typing import Mapping

import docker

from selfupdate.helper_contract import ContractError, HelperContract
from updates.engine import DockerEngine

logger = logging.getLogger('selfupdate.helper')

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_BAD_CONTRACT = 2


class SelfUpdateHelper:

    def __init__(self, engine: DockerEngine, contract: HelperContract, stop_timeout: int = 30):
        self.engine = engine
        self.contract = contract
        self.stop_timeout = stop_timeout

    async def run(self) -> int:
        c = self.contract
        logger.info(
            f"Replacing {c.container_name}: old={c.old_container_id[:12]} new={c.new_container_id[:12]}"
        )

        try:
            logger.info("Stopping old container...")
            await self.engine.stop_container(c.old_container_id, timeout=self.stop_timeout)
        except docker.errors.NotFound:
            logger.info("Old container already gone")
        except Exception as e:
            logger.error(f"Failed to stop old container: {e}")
            return EXIT_FAILED

        try:
            logger.info("Removing old container...")
            await self.engine.remove_container(c.old_container_id, force=True)
        except docker.errors.NotFound:
            pass
        except Exception as e:
            logger.error(f"Failed to remove old container: {e}")
            await self._restart_old()
            return EXIT_FAILED

        # Point of no return
        try:
            logger.info(f"Renaming new container to {c.container_name}...")
            await self.engine.rename_container(c.new_container_id, c.container_name)
        except Exception as e:
            # Still startable under its temporary name
            logger.error(f"Failed to rename new container: {e}")

        await self._reconnect_networks()

        try:
            logger.info("Starting new container...")
            await self.engine.start_container(c.new_container_id)
        except Exception as e:
            logger.critical(f"Failed to start new container: {e}. Manual intervention required.")
            return EXIT_FAILED

        logger.info("Update complete")
        return EXIT_OK

    async def _reconnect_networks(self):
        c = self.contract
        for attachment in c.networks:
            name = attachment.network_name
            # Created without endpoint config, the container may already sit
            # on its network mode's network with no aliases or addresses
            try:
                await self.engine.disconnect_network(name, c.new_container_id)
            except Exception as e:
                logger.debug(f"Disconnect from {name} before reconnect: {e}")
            try:
                await self.engine.connect_network(
                    name, c.new_container_id,
                    aliases=list(attachment.aliases),
                    ipv4_address=attachment.ipv4,
                    ipv6_address=attachment.ipv6,
                    links=list(attachment.links),
                    gw_priority=attachment.gateway_priority,
                )
                logger.info(f"Connected network {name}")
            except Exception as e:
                logger.warning(f"Failed to connect network {name}: {e}")

    async def _restart_old(self):
        try:
            await self.engine.start_container(self.contract.old_container_id)
            logger.info("Old container restarted")
        except Exception as e:
            logger.critical(f"Could not restart old container: {e}")


def main(environ: Mapping[str, str] = os.environ) -> int:
    logging.basicConfig(level=logging.INFO, format='[helper] %(message)s', stream=sys.stdout)

    try:
        contract = HelperContract.from_env(environ)
    except ContractError as e:
        logger.error(f"Invalid helper parameters: {e}")
        return EXIT_BAD_CONTRACT

    socket = environ.get('DOCKER_SOCKET', '/var/run/docker.sock')
    stop_timeout = int(environ.get('STOP_TIMEOUT', 30))
    engine = DockerEngine(docker.DockerClient(base_url=f"unix://{socket}"))
    try:
        return asyncio.run(SelfUpdateHelper(engine, contract, stop_timeout=stop_timeout).run())
    finally:
        engine.close()


if __name__ == '__main__':
    sys.exit(main())
