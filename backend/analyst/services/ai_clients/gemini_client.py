"""
Gemini API client (hosted provider).

Uses the generateContent REST endpoint in JSON response mode with a
response schema. Transient failures are retried inside one attempt by
the base invocation engine.

Example:
    async with GeminiClient.from_settings(spec, settings) as client:
        outcome = await client.invoke("gemini-2.5-flash", request)
"""

import logging
from typing import Any

from analyst.services.ai_clients.base import BaseProviderClient, InvocationRequest

logger = logging.getLogger(__name__)

SAFETY_CATEGORIES = (
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
)


class GeminiClient(BaseProviderClient):
    """
    Client for the Gemini generateContent API.

    Request shape:
        contents[0].parts: prompt text, then inlineData parts (images)
        generationConfig: responseMimeType=application/json + responseSchema
        safetySettings: BLOCK_NONE for every category (financial text
        routinely trips harassment/danger filters on words like "attack")
    """

    provider_label = "Gemini"

    def _build_call(
        self,
        model: str,
        request: InvocationRequest,
    ) -> tuple[str, dict[str, str], dict[str, str], dict[str, Any]]:
        parts: list[dict[str, Any]] = [{"text": request.prompt}]
        for part in request.parts:
            if part.is_inline:
                parts.append({"inlineData": {"mimeType": part.mime_type, "data": part.data}})
            elif part.text:
                parts.append({"text": part.text})

        payload: dict[str, Any] = {
            "contents": [{"role": "user", "parts": parts}],
            "safetySettings": [
                {"category": category, "threshold": "BLOCK_NONE"}
                for category in SAFETY_CATEGORIES
            ],
            "generationConfig": {
                "responseMimeType": "application/json",
                "responseSchema": request.response_schema,
            },
        }
        if request.system_prompt:
            payload["systemInstruction"] = {"parts": [{"text": request.system_prompt}]}

        return (
            self.spec.endpoint_for(model),
            {"key": self.api_key or ""},
            {"content-type": "application/json"},
            payload,
        )

    def _extract_text(self, body: Any) -> str:
        """Join candidates[0].content.parts[].text with newlines."""
        if not isinstance(body, dict):
            return ""
        candidates = body.get("candidates") or []
        if not candidates or not isinstance(candidates[0], dict):
            block_reason = (body.get("promptFeedback") or {}).get("blockReason")
            if block_reason:
                logger.warning(f"Gemini blocked prompt: {block_reason}")
            return ""

        parts = (candidates[0].get("content") or {}).get("parts") or []
        texts = [
            part["text"]
            for part in parts
            if isinstance(part, dict) and isinstance(part.get("text"), str)
        ]
        return "\n".join(texts).strip()

    def _extract_error_message(self, body: Any, status_code: int) -> str:
        if isinstance(body, dict):
            error = body.get("error")
            if isinstance(error, dict) and isinstance(error.get("message"), str):
                return error["message"]
        return f"Gemini request failed with status {status_code}."
