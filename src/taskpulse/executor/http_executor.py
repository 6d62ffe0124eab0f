# src/taskpulse/executor/http_executor.py

from __future__ import annotations

import logging
from typing import Any

import httpx

from ..core.ports import ExecutorResult
from ..errors import TransientDispatchError

logger = logging.getLogger(__name__)


def _dedupe_texts(texts: list[str]) -> list[str]:
    # Agents sometimes repeat a reply, or send a prefix of it separately.
    unique: list[str] = []
    for text in texts:
        if not any(text in seen or seen in text for seen in unique):
            unique.append(text)
    return unique


def extract_detail(data: Any) -> str:
    """
    Pull agent-visible text out of a gateway response.

    Preference: result.payloads[*].text, then an error/summary/status string.
    The full response is never returned, it is mostly run metadata.
    """
    if not isinstance(data, dict):
        return "" if data is None else str(data)

    result = data.get("result") if isinstance(data.get("result"), dict) else {}

    payloads = result.get("payloads")
    if isinstance(payloads, list):
        texts = [
            p["text"].strip()
            for p in payloads
            if isinstance(p, dict) and isinstance(p.get("text"), str) and p["text"].strip()
        ]
        if texts:
            return "\n\n".join(_dedupe_texts(texts))

    for src in (data, result):
        for key in ("detail", "summary", "status"):
            val = src.get(key)
            if isinstance(val, str) and val.strip():
                return val.strip()
    return ""


class HttpAgentExecutor:
    """
    AgentExecutor backed by an HTTP agent gateway.

    POST {base_url}/invoke with {"instruction", "agent_id", "model", "label"}.
    A 2xx response with "accepted": false is a rejection, not an error.
    """

    def __init__(
        self,
        base_url: str,
        *,
        token: str | None = None,
        timeout_seconds: float = 600.0,
        client: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=self._base_url,
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            transport=transport,
        )

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    async def invoke(
        self,
        *,
        instruction: str,
        agent_id: str,
        model_hint: str | None,
        label: str,
    ) -> ExecutorResult:
        body: dict[str, Any] = {"instruction": instruction, "agent_id": agent_id, "label": label}
        if model_hint:
            body["model"] = model_hint

        logger.debug("Invoking executor agent=%s label=%r len=%d", agent_id, label, len(instruction))
        try:
            resp = await self._client.post("/invoke", json=body, headers=self._headers())
        except httpx.HTTPError as e:
            raise TransientDispatchError(
                f"Executor request failed: {type(e).__name__}: {e}",
                context={"agent_id": agent_id},
            ) from e

        if resp.status_code // 100 != 2:
            snippet = resp.text[:200] if resp.text else ""
            raise TransientDispatchError(
                f"Executor returned HTTP {resp.status_code}: {snippet}",
                context={"agent_id": agent_id, "status_code": resp.status_code},
            )

        try:
            data = resp.json()
        except ValueError:
            # Plain-text body from a 2xx: treat it as the reply.
            return ExecutorResult(accepted=True, detail=resp.text.strip())

        accepted = bool(data.get("accepted", True)) if isinstance(data, dict) else True
        detail = extract_detail(data)
        if not accepted and isinstance(data, dict) and isinstance(data.get("error"), str):
            detail = data["error"]
        logger.info("Executor responded agent=%s accepted=%s detail_len=%d", agent_id, accepted, len(detail))
        return ExecutorResult(accepted=accepted, detail=detail)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
