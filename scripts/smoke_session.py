import asyncio
import logging
import os
import sys
import time

from cabinet.config import get_settings
from cabinet.runtime import create_runtime
from cabinet.shared.enums import AudioMethod, SessionStatus
from cabinet.shared.models import DisplayConfiguration, LaunchConfiguration

logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
logger = logging.getLogger("smoke_session")

# Any image with a long-running command will do; the runner image is not required
IMAGE = os.environ.get("SMOKE_IMAGE", "alpine:3.20")
GAME_ID = "smoke-test"


async def wait_for(runtime, session_id, wanted, timeout=60):
    start = time.time()
    while time.time() - start < timeout:
        session = runtime.sessions.get_session(session_id)
        logger.info(f"Session state: {session.status.value}")
        if session.status in wanted:
            return session
        await asyncio.sleep(1)
    raise RuntimeError(f"session {session_id} did not reach {[s.value for s in wanted]} in {timeout}s")


async def main():
    settings = get_settings()
    logger.info("Starting runner session smoke test against the local Docker daemon...")

    runtime = await create_runtime(settings)
    await runtime.start()
    try:
        config = LaunchConfiguration(
            image=IMAGE,
            command=("sleep", "300"),
            display=DisplayConfiguration(method=None),
            audio=AudioMethod.NONE,
            gpu=False,
            input_devices=False,
        )
        session_id = await runtime.sessions.launch(GAME_ID, config, user_agent="smoke-test")
        logger.info(f"Launched session {session_id} with image {IMAGE}")

        session = await wait_for(runtime, session_id, {SessionStatus.RUNNING, SessionStatus.ERROR})
        if session.status is SessionStatus.ERROR:
            logger.error(f"FAILURE: launch failed: {session.error}")
            return 1
        logger.info(f"Container {session.container_id[:12]} running, display={session.metadata.display_server.value}")

        stats = await runtime.monitor.poll_once()
        logger.info(f"Health poll: {stats}")
        logger.info(f"Resources: {runtime.sessions.get_session(session_id).resources}")

        await runtime.sessions.stop(session_id)
        session = await wait_for(runtime, session_id, {SessionStatus.STOPPED, SessionStatus.ERROR})
        if session.status is SessionStatus.ERROR:
            logger.error(f"FAILURE: teardown failed: {session.error}")
            return 1

        logger.info(f"SUCCESS: session ran for {session.duration_seconds:.1f}s")
        logger.info(f"Stats: {runtime.sessions.get_stats(GAME_ID)}")
        return 0
    finally:
        await runtime.shutdown()


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
