"""Cohere vision helpers used to turn a product photo into search keywords."""

from __future__ import annotations

import base64
import binascii
import json
import os
import re
import time
from dataclasses import dataclass
from typing import Any
import urllib.error
import urllib.request

from personal_shopper.config import _env_float


DEFAULT_BASE_URL = "https://api.cohere.com/v2"
MAX_KEYWORDS = 10

_DATA_URL = re.compile(r"^data:(image/[\w.+-]+);base64,(.*)$", re.IGNORECASE | re.DOTALL)
_IMAGE_SIGNATURES: tuple[tuple[bytes, str], ...] = (
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"GIF8", "image/gif"),
    (b"RIFF", "image/webp"),
)


class CohereRequestError(RuntimeError):
    pass


def _env_retries(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except Exception:
        return default
    return value if value >= 0 else default


@dataclass(frozen=True)
class CohereConfig:
    vision_model: str

    @classmethod
    def from_env(cls) -> "CohereConfig":
        return cls(vision_model=os.getenv("PS_VISION_MODEL", "command-a-vision-07-2025"))


class CohereClient:
    def __init__(self, *, api_key: str, base_url: str, timeout_seconds: float, max_retries: int) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = max(1.0, float(timeout_seconds))
        self.max_retries = max(0, int(max_retries))

    def _post_json(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        body = json.dumps(payload).encode("utf-8")
        endpoint = f"{self.base_url}{path}"
        request = urllib.request.Request(
            endpoint,
            data=body,
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Accept": "application/json",
                "Content-Type": "application/json",
            },
            method="POST",
        )

        last_error: Exception | None = None
        for attempt in range(self.max_retries + 1):
            try:
                with urllib.request.urlopen(request, timeout=self.timeout_seconds) as response:
                    return json.loads(response.read().decode("utf-8"))
            except urllib.error.HTTPError as exc:
                response_body = exc.read().decode("utf-8", errors="ignore")
                retryable = exc.code in {408, 409, 429, 500, 502, 503, 504}
                if retryable and attempt < self.max_retries:
                    time.sleep(0.4 * (2**attempt))
                    continue
                raise CohereRequestError(
                    f"Cohere request failed ({exc.code}) at {path}: {response_body or exc.reason}"
                ) from exc
            except urllib.error.URLError as exc:
                last_error = exc
                if attempt < self.max_retries:
                    time.sleep(0.4 * (2**attempt))
                    continue
                raise CohereRequestError(f"Cohere request failed at {path}: {exc.reason}") from exc

        raise CohereRequestError(f"Cohere request failed at {path}: {last_error}")

    @staticmethod
    def _extract_chat_text(payload: dict[str, Any]) -> str:
        message = payload.get("message")
        if not isinstance(message, dict):
            return ""

        content = message.get("content")
        if isinstance(content, str):
            return content.strip()
        if isinstance(content, list):
            parts: list[str] = []
            for chunk in content:
                if isinstance(chunk, dict):
                    text = chunk.get("text")
                    if isinstance(text, str):
                        parts.append(text)
            return "\n".join(parts).strip()
        return ""

    def chat_image_text(
        self,
        *,
        prompt: str,
        image_bytes: bytes,
        model: str,
        mime_type: str = "image/jpeg",
        temperature: float = 0.2,
    ) -> str:
        b64 = base64.b64encode(image_bytes).decode("utf-8")
        payload = {
            "model": model,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": prompt},
                        {"type": "image_url", "image_url": {"url": f"data:{mime_type};base64,{b64}"}},
                    ],
                }
            ],
            "temperature": temperature,
        }
        response = self._post_json("/chat", payload)
        return self._extract_chat_text(response)


def _extract_json_block(text: str) -> dict[str, Any]:
    raw = (text or "").strip()
    if not raw:
        raise ValueError("Model returned an empty response.")

    if raw.startswith("```"):
        first_newline = raw.find("\n")
        last_fence = raw.rfind("```")
        if first_newline != -1 and last_fence > first_newline:
            raw = raw[first_newline:last_fence].strip()

    candidates = [raw]
    start = raw.find("{")
    end = raw.rfind("}")
    if start != -1 and end > start:
        candidates.append(raw[start : end + 1])

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except Exception:
            continue
        if isinstance(parsed, dict):
            return parsed

    raise ValueError(f"Could not parse JSON object from model response: {text[:200]}")


def make_client() -> CohereClient:
    api_key = os.getenv("COHERE_API_KEY", "").strip()
    if not api_key:
        raise RuntimeError("COHERE_API_KEY is not set.")

    return CohereClient(
        api_key=api_key,
        base_url=os.getenv("COHERE_API_BASE_URL", "").strip() or DEFAULT_BASE_URL,
        timeout_seconds=_env_float("PS_COHERE_TIMEOUT_SECONDS", 20.0),
        max_retries=_env_retries("PS_COHERE_MAX_RETRIES", 1),
    )


def sniff_mime_type(image_bytes: bytes) -> str:
    for signature, mime_type in _IMAGE_SIGNATURES:
        if image_bytes.startswith(signature):
            return mime_type
    return "image/jpeg"


def decode_image_payload(payload: bytes | str) -> tuple[bytes, str]:
    """Accept raw bytes, a base64 string or a data URL and return ``(bytes, mime_type)``."""
    if isinstance(payload, (bytes, bytearray)):
        data = bytes(payload)
        if not data:
            raise ValueError("Image payload is empty.")
        return data, sniff_mime_type(data)

    text = str(payload or "").strip()
    if not text:
        raise ValueError("Image payload is empty.")

    mime_type = ""
    match = _DATA_URL.match(text)
    if match:
        mime_type = match.group(1).lower()
        text = match.group(2)
    try:
        data = base64.b64decode("".join(text.split()), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("Image payload is not valid base64.") from exc
    if not data:
        raise ValueError("Image payload is empty.")
    return data, mime_type or sniff_mime_type(data)


def _clean_strings(values: Any, *, limit: int | None = None) -> list[str]:
    if not isinstance(values, list):
        return []
    out: list[str] = []
    for value in values:
        if isinstance(value, str) and value.strip() and value.strip().lower() not in out:
            out.append(value.strip().lower())
    return out[:limit] if limit else out


def analyze_product_image(
    client: CohereClient,
    *,
    image_bytes: bytes,
    model: str,
    query_hint: str = "",
    mime_type: str = "image/jpeg",
) -> dict[str, Any]:
    prompt = (
        "You are a shopping assistant that turns product photos into catalog search keywords.\n"
        "Analyze the main product in the image and output ONLY valid JSON with keys:\n"
        "- search_keywords (array of 5-10 short keywords: product type, style, colors, brand if visible, "
        "distinctive design features)\n"
        "- category (fashion|electronics|books|home|sports|beauty|food|unknown)\n"
        "- colors (array of 1-5 plain color words)\n"
        "- materials (array)\n"
        "- occasion (string)\n"
        "- style (string)\n"
        "- confidence (number between 0 and 1)\n"
        "- description (one sentence)\n"
        f'Shopper request: "{query_hint}"\n'
        "No markdown. No extra keys."
    )
    raw = client.chat_image_text(prompt=prompt, image_bytes=image_bytes, model=model, mime_type=mime_type)
    try:
        parsed = _extract_json_block(raw)
    except ValueError:
        # Some responses are a bare keyword list.
        parsed = {"search_keywords": raw.split(), "confidence": 0.5}

    keywords = _clean_strings(parsed.get("search_keywords"), limit=MAX_KEYWORDS)
    if not keywords:
        raise ValueError("Image analysis returned no search keywords.")

    try:
        confidence = float(parsed.get("confidence", 0.5))
    except (TypeError, ValueError):
        confidence = 0.5

    category = str(parsed.get("category") or "").strip().lower()
    return {
        "search_keywords": keywords,
        "category": "" if category == "unknown" else category,
        "confidence": max(0.0, min(1.0, confidence)),
        "colors": _clean_strings(parsed.get("colors"), limit=5),
        "materials": _clean_strings(parsed.get("materials")),
        "occasion": str(parsed.get("occasion") or "").strip().lower(),
        "style": str(parsed.get("style") or "").strip().lower(),
        "description": str(parsed.get("description") or "").strip() or f"Image analysis: {', '.join(keywords)}",
    }
