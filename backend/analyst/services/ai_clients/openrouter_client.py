"""
OpenRouter client (aggregator provider).

OpenAI-compatible chat completions in JSON object mode. The response
schema cannot be enforced upstream for every routed model, so it is
appended to the prompt as an instruction. Each model is tried once;
fallback to the backup model is the orchestrator's job.
"""

import json
from typing import Any

from analyst.config import Settings
from analyst.services.ai_clients.base import BaseProviderClient, InvocationRequest


class OpenRouterClient(BaseProviderClient):
    """Client for the OpenRouter chat completions API."""

    provider_label = "OpenRouter"

    def __init__(
        self,
        *args,
        site_url: str | None = None,
        app_title: str | None = None,
        **kwargs,
    ):
        super().__init__(*args, **kwargs)
        self.site_url = site_url
        self.app_title = app_title

    @classmethod
    def from_settings(cls, spec, settings: Settings, transport=None, **kwargs):
        return super().from_settings(
            spec,
            settings,
            transport=transport,
            site_url=settings.openrouter_site_url,
            app_title=settings.openrouter_app_title,
            **kwargs,
        )

    def _build_call(
        self,
        model: str,
        request: InvocationRequest,
    ) -> tuple[str, dict[str, str], dict[str, str], dict[str, Any]]:
        schema_note = (
            "\n\nReturn only a JSON object matching this schema:\n"
            f"{json.dumps(request.response_schema, ensure_ascii=False)}"
        )
        content: list[dict[str, Any]] = [{"type": "text", "text": request.prompt + schema_note}]
        for part in request.parts:
            if part.is_inline:
                content.append(
                    {
                        "type": "image_url",
                        "image_url": {"url": f"data:{part.mime_type};base64,{part.data}"},
                    }
                )
            elif part.text:
                content.append({"type": "text", "text": part.text})

        messages: list[dict[str, Any]] = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.append({"role": "user", "content": content})

        headers = {
            "authorization": f"Bearer {self.api_key}",
            "content-type": "application/json",
        }
        if self.site_url:
            headers["http-referer"] = self.site_url
        if self.app_title:
            headers["x-title"] = self.app_title

        payload = {
            "model": model,
            "messages": messages,
            "response_format": {"type": "json_object"},
        }
        return self.spec.endpoint_for(model), {}, headers, payload

    def _extract_text(self, body: Any) -> str:
        if not isinstance(body, dict):
            return ""
        choices = body.get("choices") or []
        if not choices or not isinstance(choices[0], dict):
            return ""

        content = (choices[0].get("message") or {}).get("content")
        if isinstance(content, str):
            return content.strip()
        if isinstance(content, list):
            texts = [
                item.get("text", "")
                for item in content
                if isinstance(item, dict) and isinstance(item.get("text"), str)
            ]
            return "\n".join(texts).strip()
        return ""

    def _extract_error_message(self, body: Any, status_code: int) -> str:
        if isinstance(body, dict):
            error = body.get("error")
            if isinstance(error, dict) and isinstance(error.get("message"), str):
                return error["message"]
        return f"OpenRouter request failed with status {status_code}."

    def _extract_inline_error(self, body: Any) -> tuple[str, int | None] | None:
        # Routed upstream failures can arrive as 200 with an error object
        if isinstance(body, dict) and not body.get("choices"):
            error = body.get("error")
            if isinstance(error, dict):
                code = error.get("code")
                status = code if isinstance(code, int) else None
                return self._extract_error_message(body, status or 200), status
        return None
