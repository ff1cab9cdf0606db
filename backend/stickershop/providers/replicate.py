"""
Image generation provider (Replicate-hosted model).

Jobs ("predictions") are asynchronous: creation returns an id straight away
and the caller polls until the job reaches a terminal status.

The image goes in ``input_images`` either as a data URI (inline) or as a
public URL. Which one is used is decided by the orchestrator; this module
just sends what it is given.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from stickershop.config import Settings
from stickershop.errors import MissingCredentials, ProviderError

logger = logging.getLogger(__name__)

# Fixed request parameters for the hosted image model
DEFAULT_INPUT: Dict[str, Any] = {
    "quality": "auto",
    "moderation": "auto",
    "aspect_ratio": "1:1",
    "number_of_images": 1,
    "output_format": "webp",
    "output_compression": 90,
}

TERMINAL_STATUSES = {"succeeded", "failed", "canceled"}


class ReplicateClient:
    """
    Async client for the prediction API.

    Usage:
        client = ReplicateClient(settings, http)
        job_id = await client.create_prediction(prompt, image_ref, "transparent")
        payload = await client.get_prediction(job_id)
    """

    def __init__(self, settings: Settings, http: httpx.AsyncClient):
        self.settings = settings
        self.http = http

    def _headers(self) -> Dict[str, str]:
        if not self.settings.replicate_api_token:
            raise MissingCredentials("REPLICATE_API_TOKEN not configured")
        return {
            "Authorization": f"Bearer {self.settings.replicate_api_token}",
            "Content-Type": "application/json",
        }

    def build_input(self, prompt: str, image_ref: str, background: str) -> Dict[str, Any]:
        model_input: Dict[str, Any] = dict(DEFAULT_INPUT)
        model_input.update({
            "prompt": prompt,
            "input_images": [image_ref],
            "background": background,
        })
        if self.settings.openai_api_key:
            model_input["openai_api_key"] = self.settings.openai_api_key
        return model_input

    async def create_prediction(self, prompt: str, image_ref: str, background: str) -> str:
        """Start a generation job.

        Returns:
            The provider's job id

        Raises:
            MissingCredentials: no API token configured
            ProviderError: the provider rejected the request or returned no id
        """
        headers = self._headers()
        body = {
            "version": self.settings.generation_model,
            "input": self.build_input(prompt, image_ref, background),
        }

        try:
            response = await self.http.post(
                f"{self.settings.replicate_api_url}/predictions",
                headers=headers,
                json=body,
            )
        except httpx.HTTPError as e:
            logger.error("Generation API unreachable (%s)", type(e).__name__)
            raise ProviderError(f"Generation API unreachable: {type(e).__name__}") from None

        data = _json_or_text(response)

        if response.status_code >= 400:
            # Never log the request body: it may hold the inline image
            logger.error("Generation API rejected job (status=%s)", response.status_code)
            raise ProviderError(
                _error_message(data) or f"Generation API returned HTTP {response.status_code}",
                status=response.status_code,
                details=data,
            )

        job_id = data.get("id") if isinstance(data, dict) else None
        if not job_id:
            logger.error("Generation API returned no job id")
            raise ProviderError("No prediction ID returned from provider", status=response.status_code, details=data)

        logger.info("Generation job %s created", job_id)
        return str(job_id)

    async def get_prediction(self, job_id: str) -> Dict[str, Any]:
        """Fetch the current state of a job (raw provider payload)."""
        headers = self._headers()
        try:
            response = await self.http.get(
                f"{self.settings.replicate_api_url}/predictions/{job_id}",
                headers=headers,
            )
        except httpx.HTTPError as e:
            logger.error("Generation API unreachable while polling %s (%s)", job_id, type(e).__name__)
            raise ProviderError(f"Generation API unreachable: {type(e).__name__}") from None

        data = _json_or_text(response)
        if response.status_code >= 400 or not isinstance(data, dict):
            logger.error("Polling job %s failed (status=%s)", job_id, response.status_code)
            raise ProviderError(
                _error_message(data) or f"Generation API returned HTTP {response.status_code}",
                status=response.status_code,
                details=data,
            )
        return data


def first_output_url(output: Any) -> Optional[str]:
    """Providers return a single URL, a list of URLs, or a dict holding them."""
    if isinstance(output, str):
        return output or None
    if isinstance(output, list):
        for item in output:
            found = first_output_url(item)
            if found:
                return found
        return None
    if isinstance(output, dict):
        for key in ("url", "image", "images", "output"):
            if key in output:
                found = first_output_url(output[key])
                if found:
                    return found
    return None


def _json_or_text(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


def _error_message(data: Any) -> str:
    if isinstance(data, dict):
        parts: List[str] = []
        for key in ("title", "detail", "error", "message"):
            value = data.get(key)
            if isinstance(value, str) and value:
                parts.append(value)
        return ": ".join(parts)
    if isinstance(data, str):
        return data[:500]
    return ""
