# src/taskpulse/connectors/matrix_client.py

from __future__ import annotations

import contextlib
import json
import logging
import os
from pathlib import Path
from typing import Any

from nio import AsyncClient, AsyncClientConfig, LoginResponse

from ..config import Settings

logger = logging.getLogger(__name__)


def _session_path(store_dir: Path) -> Path:
    return store_dir / "session.json"


def _load_json(path: Path) -> dict[str, Any]:
    val = json.loads(path.read_text("utf-8"))
    if isinstance(val, dict):
        return val
    raise ValueError("Expected JSON object")


def _atomic_write_json(path: Path, data: dict[str, Any]) -> None:
    tmp = path.with_suffix(".tmp")
    tmp.write_text(json.dumps(data, ensure_ascii=False), "utf-8")
    os.replace(tmp, path)
    with contextlib.suppress(OSError):
        # Holds an access token.
        os.chmod(path, 0o600)


def _restore_session(client: AsyncClient, session_file: Path) -> bool:
    try:
        data = _load_json(session_file)
    except (OSError, ValueError) as e:
        logger.warning("Failed to read Matrix session.json, will try password login: %r", e)
        return False

    access_token = data.get("access_token")
    user_id = data.get("user_id")
    device_id = data.get("device_id")
    if not access_token or not user_id or not device_id:
        logger.warning("Matrix session.json is missing required fields, will try password login")
        return False

    client.access_token = str(access_token)
    client.user_id = str(user_id)
    client.device_id = str(device_id)
    logger.info("Matrix session restored for %s", client.user_id)
    return True


async def create_matrix_client(settings: Settings) -> AsyncClient | None:
    """
    Matrix AsyncClient for notifications and owner commands (unencrypted rooms).

    session.json under matrix_store_path lets restarts reuse the access token
    and device id instead of logging in again.
    """
    homeserver = settings.matrix_homeserver
    user_id = settings.matrix_user_id

    if not homeserver or not user_id:
        logger.error("Matrix is not configured: set TASKPULSE_MATRIX_HOMESERVER and TASKPULSE_MATRIX_USER_ID")
        return None

    store_dir = Path(settings.matrix_store_path)
    store_dir.mkdir(parents=True, exist_ok=True)
    session_file = _session_path(store_dir)

    client = AsyncClient(
        homeserver,
        user_id,
        config=AsyncClientConfig(encryption_enabled=False, store_sync_tokens=False),
    )

    if session_file.exists() and _restore_session(client, session_file):
        return client

    if not settings.matrix_password:
        logger.error(
            "Matrix session.json not found and password is not set. "
            "Set TASKPULSE_MATRIX_PASSWORD once to bootstrap a session."
        )
        await client.close()
        return None

    device_name = f"{settings.app_name} (Python)"
    logger.info("Logging in to Matrix to bootstrap a new session (device_name=%r)...", device_name)
    resp = await client.login(password=settings.matrix_password, device_name=device_name)

    if not isinstance(resp, LoginResponse):
        logger.error("Matrix login failed: %r", resp)
        await client.close()
        return None

    try:
        _atomic_write_json(
            session_file,
            {"access_token": resp.access_token, "user_id": resp.user_id, "device_id": resp.device_id},
        )
        logger.info("Matrix session saved to %s (user=%s)", session_file, resp.user_id)
    except OSError:
        # The session still works for this run; the next start logs in again.
        logger.exception("Failed to write Matrix session.json (%s)", session_file)

    return client
