"""Hand approved plans to an external actioner over HTTP, with endpoint fallback."""
from __future__ import annotations

import logging
import ssl
from typing import Any

import aiohttp
import certifi

from ..config import ExecutorConfig
from ..models import ExecutionReceipt, Plan, Position

logger = logging.getLogger(__name__)


class WebhookExecutor:
    """POST plan JSON to the first actioner endpoint that accepts it."""

    name = "webhook"

    def __init__(self, config: ExecutorConfig) -> None:
        self.endpoints = list(config.endpoints)
        self.timeout = config.timeout
        self.auth_token = config.auth_token
        self.current_index = 0

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        return headers

    async def submit(self, plan: Plan, position: Position) -> ExecutionReceipt:
        """Try each endpoint in turn; a rejected receipt if all of them fail."""
        payload: dict[str, Any] = {
            "plan": plan.to_dict(),
            "position": position.to_dict(),
        }
        ssl_context = ssl.create_default_context(cafile=certifi.where())

        last_error: Exception | None = None
        for attempt in range(len(self.endpoints)):
            index = (self.current_index + attempt) % len(self.endpoints)
            url = self.endpoints[index]

            try:
                connector = aiohttp.TCPConnector(ssl=ssl_context)
                async with aiohttp.ClientSession(connector=connector) as session:
                    async with session.post(
                        url,
                        json=payload,
                        headers=self._headers(),
                        timeout=aiohttp.ClientTimeout(total=self.timeout),
                    ) as response:
                        if response.status >= 400:
                            raise RuntimeError(f"HTTP {response.status}")
                        body = await response.json(content_type=None) or {}

                if index != self.current_index:
                    logger.info("Switched to actioner endpoint: %s", url)
                    self.current_index = index

                logger.info("Plan %s submitted to %s", plan.plan_id, url)
                return ExecutionReceipt(
                    plan_id=plan.plan_id,
                    executor=self.name,
                    accepted=bool(body.get("accepted", True)),
                    reference=str(body.get("reference", "")),
                    detail=url,
                )
            except Exception as e:
                last_error = e
                logger.warning("Actioner endpoint %s failed: %s", url, e)
                if attempt < len(self.endpoints) - 1:
                    logger.info("Trying next endpoint...")

        logger.error("All actioner endpoints failed for plan %s", plan.plan_id)
        return ExecutionReceipt(
            plan_id=plan.plan_id,
            executor=self.name,
            accepted=False,
            detail=f"All actioner endpoints failed. Last error: {last_error}",
        )
