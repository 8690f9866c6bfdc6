"""External generation tool adapters.

Classes:
    GenerationTool: Protocol for anything that turns a job into an artifact reference.
    ReplicateGenerationTool: Stable Diffusion XL through the Replicate predictions HTTP API.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional, Protocol

import httpx

from memory_engine.core.config import Settings, get_settings
from memory_engine.core.errors import JobExecutionFailed
from memory_engine.models import GenerationJob, GenerationTool as ToolName

_LOGGER = logging.getLogger(__name__)

_TERMINAL_PREDICTION_STATES = {"succeeded", "failed", "canceled"}
_POLL_INTERVAL_SECONDS = 1.0


class GenerationTool(Protocol):
    async def generate(self, job: GenerationJob) -> str: ...


def extract_artifact_url(output: Any) -> Optional[str]:
    if isinstance(output, str) and output.startswith("http"):
        return output
    if isinstance(output, list):
        for item in output:
            if isinstance(item, str) and item.startswith("http"):
                return item
    return None


class ReplicateGenerationTool:
    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        settings: Settings | None = None,
        *,
        poll_interval: float = _POLL_INTERVAL_SECONDS,
    ) -> None:
        self._settings = settings or get_settings()
        token = self._settings.replicate_api_token
        if client is not None:
            self._client = client
        elif token is not None:
            self._client = httpx.AsyncClient(
                base_url=self._settings.replicate_base_url,
                headers={
                    "Authorization": f"Bearer {token.get_secret_value()}",
                    "Content-Type": "application/json",
                },
                timeout=None,
            )
        else:
            self._client = None
        self._poll_interval = poll_interval

    @property
    def is_configured(self) -> bool:
        return self._client is not None

    async def generate(self, job: GenerationJob) -> str:
        tool = job.tool
        if tool in (ToolName.STABLE_DIFFUSION, ToolName.OTHER):
            return await self.generate_image(job.prompt)
        if tool == ToolName.RUNWAY:
            raise JobExecutionFailed(
                "Runway API integration not yet implemented. Please generate manually and update status.",
                hint="Runway generation is not supported yet.",
            )
        if tool == ToolName.MIDJOURNEY:
            raise JobExecutionFailed(
                "Midjourney API integration not yet implemented. Please generate manually and update status.",
                hint="Midjourney generation is not supported yet.",
            )
        raise JobExecutionFailed(f"Unknown generation tool: {tool}", hint="Unknown generation tool.")

    async def generate_image(self, prompt: str) -> str:
        if self._client is None:
            raise JobExecutionFailed(
                "Replicate client not initialized. Check REPLICATE_API_TOKEN.",
                hint="Image generation is not configured.",
            )
        payload = {
            "version": self._settings.replicate_model_version,
            "input": {
                "prompt": prompt,
                "negative_prompt": self._settings.replicate_negative_prompt,
                "width": 1024,
                "height": 1024,
                "num_outputs": 1,
                "scheduler": "K_EULER",
                "num_inference_steps": 30,
                "guidance_scale": 7.5,
            },
        }
        response = await self._client.post("/predictions", json=payload, headers={"Prefer": "wait"})
        response.raise_for_status()
        prediction = response.json()
        _LOGGER.info("Replicate prediction %s created (%s)", prediction.get("id"), prediction.get("status"))

        prediction = await self._wait(prediction)
        if prediction.get("status") == "succeeded":
            url = extract_artifact_url(prediction.get("output"))
            if url:
                return url
        error = prediction.get("error") or "Unknown error"
        raise JobExecutionFailed(f"Replicate generation failed: {error}")

    async def _wait(self, prediction: dict[str, Any]) -> dict[str, Any]:
        while prediction.get("status") not in _TERMINAL_PREDICTION_STATES:
            poll_url = (prediction.get("urls") or {}).get("get") or f"/predictions/{prediction.get('id')}"
            await asyncio.sleep(self._poll_interval)
            response = await self._client.get(poll_url)
            response.raise_for_status()
            prediction = response.json()
        return prediction

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
