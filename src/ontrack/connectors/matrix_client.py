# src/ontrack/connectors/matrix_client.py

from __future__ import annotations

"""
Matrix client bootstrap for the notification room.

The bot account logs in with a password once; the resulting access token and
device id are kept in <matrix_store_path>/session.json and reused on every
restart. Notifications are plain room messages, so no crypto store is kept.
"""

import contextlib
import json
import logging
import os
from dataclasses import asdict, dataclass
from pathlib import Path

from nio import AsyncClient, AsyncClientConfig, LoginResponse

logger = logging.getLogger(__name__)

SESSION_FILE = "session.json"


@dataclass(frozen=True, slots=True)
class MatrixSession:
    access_token: str
    user_id: str
    device_id: str

    @classmethod
    def load(cls, path: Path) -> MatrixSession | None:
        """Read session.json. Missing, unreadable or incomplete files yield None."""
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text("utf-8"))
            if not isinstance(data, dict):
                raise ValueError("expected a JSON object")
            session = cls(
                access_token=str(data.get("access_token") or ""),
                user_id=str(data.get("user_id") or ""),
                device_id=str(data.get("device_id") or ""),
            )
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable %s: %r", path, e)
            return None

        if not (session.access_token and session.user_id and session.device_id):
            logger.warning("Ignoring incomplete %s", path)
            return None
        return session

    def save(self, path: Path) -> None:
        # write-then-rename so a crash never leaves half a token on disk
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps(asdict(self)), "utf-8")
        os.replace(tmp, path)
        with contextlib.suppress(OSError):
            os.chmod(path, 0o600)

    def apply(self, client: AsyncClient) -> None:
        client.access_token = self.access_token
        client.user_id = self.user_id
        client.device_id = self.device_id


def restore_session(client: AsyncClient, session_file: Path) -> bool:
    session = MatrixSession.load(session_file)
    if session is None:
        return False
    session.apply(client)
    logger.info("Matrix session restored for %s (device %s)", session.user_id, session.device_id)
    return True


async def create_matrix_client(settings) -> AsyncClient | None:
    """
    Build the notifier's AsyncClient, or None when Matrix cannot be used.

    session.json holds a live access token: matrix_store_path must stay out of git.
    """
    if not settings.matrix_homeserver or not settings.matrix_user_id:
        logger.error("Matrix needs ONTRACK_MATRIX_HOMESERVER and ONTRACK_MATRIX_USER_ID")
        return None

    store_dir = Path(settings.matrix_store_path)
    store_dir.mkdir(parents=True, exist_ok=True)
    session_file = store_dir / SESSION_FILE

    client = AsyncClient(
        settings.matrix_homeserver,
        settings.matrix_user_id,
        config=AsyncClientConfig(store_sync_tokens=True),
    )
    if restore_session(client, session_file):
        return client

    if not settings.matrix_password:
        logger.error("No Matrix session in %s; set ONTRACK_MATRIX_PASSWORD once to log in", store_dir)
        await client.close()
        return None

    device_name = f"{settings.app_name} notifier"
    logger.info("Matrix password login as %s (device_name=%r)", settings.matrix_user_id, device_name)
    resp = await client.login(password=settings.matrix_password, device_name=device_name)
    if not isinstance(resp, LoginResponse):
        logger.error("Matrix login failed: %r", resp)
        await client.close()
        return None

    try:
        MatrixSession(resp.access_token, resp.user_id, resp.device_id).save(session_file)
        logger.info("Matrix session saved to %s", session_file)
    except OSError as e:
        # logged in anyway; the next start simply logs in again
        logger.error("Could not save %s: %r", session_file, e)
    return client
