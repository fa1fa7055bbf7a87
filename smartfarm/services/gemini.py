"""
Gemini model client.

The rest of the app only sees `GeminiClient.generate(prompt, config)` and the
`ModelCallResult` it returns. The client is built once by the entry point and
passed to each flow explicitly.
"""
import logging
import os
from dataclasses import dataclass
from io import BytesIO
from typing import Any, List, Optional, Sequence, Union

import google.generativeai as genai
from PIL import Image

from smartfarm.models import FinishReason, GenerationConfig, ModelCallResult

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gemini-2.5-flash"
DEFAULT_TIMEOUT = 60.0

# Large inline images trigger provider 400s; shrink them first
MAX_INLINE_BYTES = 700_000
MAX_INLINE_DIM = 1400
REENCODE_DIM = 1200

_SAFETY_REASONS = {"SAFETY", "BLOCKLIST", "PROHIBITED_CONTENT", "SPII", "IMAGE_SAFETY"}


def get_gemini_api_keys() -> list:
    """Return configured Gemini API keys.

    Supports either GEMINI_API_KEY (single) or GEMINI_API_KEYS (comma/whitespace-separated).
    Only the first whitespace-delimited token per line is used so accidental
    comments do not leak into requests.
    """
    raw = os.getenv("GEMINI_API_KEYS", "") or os.getenv("GEMINI_API_KEY", "") or ""
    keys: list[str] = []
    for chunk in raw.replace(",", "\n").splitlines():
        token = chunk.strip()
        if not token:
            continue
        keys.append(token.split()[0].strip())
    return keys


def get_gemini_api_key() -> str:
    keys = get_gemini_api_keys()
    return keys[0] if keys else ""


@dataclass(frozen=True)
class MediaRef:
    """Inline media part (an uploaded crop photo)."""
    data: bytes
    mime_type: str = "image/jpeg"


PromptPart = Union[str, MediaRef]
Prompt = Union[str, Sequence[PromptPart]]


def preflight_image(image_bytes: bytes) -> bytes:
    """Downscale/re-encode oversized images; returns the input on any failure."""
    try:
        need_reencode = len(image_bytes) > MAX_INLINE_BYTES
        if not need_reencode:
            with Image.open(BytesIO(image_bytes)) as img:
                need_reencode = max(img.size) > MAX_INLINE_DIM
        if not need_reencode:
            return image_bytes

        with Image.open(BytesIO(image_bytes)) as img:
            img = img.convert("RGB")
            w, h = img.size
            if max(w, h) > REENCODE_DIM:
                scale = REENCODE_DIM / float(max(w, h))
                img = img.resize((int(w * scale), int(h * scale)), Image.LANCZOS)
            out = BytesIO()
            img.save(out, format="JPEG", quality=75, optimize=True)
            logger.info("Re-encoded image for Gemini: %d -> %d bytes", len(image_bytes), out.tell())
            return out.getvalue()
    except Exception as e:
        logger.warning("Image preflight failed, sending original bytes: %s", e)
        return image_bytes


def result_text(response: Any) -> str:
    """Return the text of a generate_content response, or "" if there is none."""
    if response is None:
        return ""
    try:
        text = response.text
    except (ValueError, AttributeError, IndexError):
        # `.text` raises when the candidate was blocked or has no parts
        text = None
    if text is not None:
        return text if isinstance(text, str) else str(text)

    chunks: List[str] = []
    for candidate in getattr(response, "candidates", None) or []:
        content = getattr(candidate, "content", None)
        for part in getattr(content, "parts", None) or []:
            part_text = getattr(part, "text", None)
            if part_text:
                chunks.append(part_text)
    return "".join(chunks)


def _reason_name(value: Any) -> str:
    name = getattr(value, "name", None)
    return str(name if name is not None else value or "").upper()


def finish_reason_of(response: Any) -> FinishReason:
    candidates = getattr(response, "candidates", None) or []
    if not candidates:
        feedback = getattr(response, "prompt_feedback", None)
        block = _reason_name(getattr(feedback, "block_reason", None))
        if block and block not in ("0", "BLOCK_REASON_UNSPECIFIED"):
            return FinishReason.SAFETY
        return FinishReason.OTHER

    reason = _reason_name(getattr(candidates[0], "finish_reason", None))
    if reason == "STOP":
        return FinishReason.COMPLETE
    if reason in ("MAX_TOKENS", "LENGTH"):
        return FinishReason.MAX_TOKENS
    if reason in _SAFETY_REASONS:
        return FinishReason.SAFETY
    return FinishReason.OTHER


class GeminiClient:
    """Thin async wrapper over `google.generativeai.GenerativeModel`."""

    def __init__(self, api_key: str, model_name: str = DEFAULT_MODEL, timeout: float = DEFAULT_TIMEOUT):
        if not api_key:
            raise ValueError("GEMINI_API_KEY not configured")
        genai.configure(api_key=api_key)
        self.model_name = model_name
        self.timeout = timeout
        self._model = genai.GenerativeModel(model_name)

    @classmethod
    def from_env(cls) -> "GeminiClient":
        return cls(
            api_key=get_gemini_api_key(),
            model_name=os.getenv("GEMINI_MODEL", DEFAULT_MODEL),
            timeout=float(os.getenv("GEMINI_TIMEOUT_SECONDS", str(DEFAULT_TIMEOUT))),
        )

    @staticmethod
    def _contents(prompt: Prompt) -> List[Any]:
        if isinstance(prompt, str):
            return [prompt]
        parts: List[Any] = []
        for part in prompt:
            if isinstance(part, MediaRef):
                data = preflight_image(part.data)
                mime_type = part.mime_type if data is part.data else "image/jpeg"
                parts.append({"mime_type": mime_type, "data": data})
            else:
                parts.append(str(part))
        return parts

    @staticmethod
    def _generation_config(config: Optional[GenerationConfig]) -> "genai.types.GenerationConfig":
        config = config or GenerationConfig()
        return genai.types.GenerationConfig(**config.model_dump(exclude_none=True))

    async def generate(self, prompt: Prompt, config: Optional[GenerationConfig] = None) -> ModelCallResult:
        response = await self._model.generate_content_async(
            self._contents(prompt),
            generation_config=self._generation_config(config),
            request_options={"timeout": self.timeout},
        )
        result = ModelCallResult(raw_text=result_text(response), finish_reason=finish_reason_of(response))
        logger.debug("[Gemini] %s finish=%s chars=%d", self.model_name, result.finish_reason.value, len(result.raw_text))
        return result
