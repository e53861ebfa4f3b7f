"""Classify flyer images into karaoke-schedule candidates with a vision model."""

import asyncio
import base64
import json
import logging
import mimetypes
import re
import sys
from typing import Any, Optional

import httpx

from showparser.errors import ClassifierRejected, ClassifierUnavailable, UnparseableResult
from showparser.models import CandidateKind, ExtractionCandidate, ImageRef

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE = 0.8
RETRYABLE_STATUS = {408, 425, 429}

# ---------------------------------------------------------------------------
# System prompt
# ---------------------------------------------------------------------------

SYSTEM_PROMPT_FLYER = """You are a data extraction assistant. You read images posted on social media pages of karaoke hosts, DJs and bars, and decide whether each image advertises karaoke.

Relevant images: event flyers, weekly schedules, posters, or screenshots that mention karaoke, "mic night", singing nights, a karaoke DJ/host, or a venue hosting karaoke.
Not relevant: memes, selfies without venue or schedule information, food photos, profile pictures, ads for unrelated products.

Return ONE JSON object with these keys:
- "relevant": true or false
- "kind": the main thing the image describes, one of "show", "venue", "dj", "vendor"
    - "show": a recurring or one-off karaoke night at a venue (preferred whenever a venue and a day or time are visible)
    - "venue": a bar or restaurant that hosts karaoke, without schedule details
    - "dj": a karaoke host/DJ without a specific venue
    - "vendor": a karaoke company or entertainment business
- "confidence": number between 0 and 1, how sure you are about the extracted fields
- "fields": object with the fields for that kind (omit fields you cannot read):
    - show: "venue", "address", "city", "state", "zip", "day", "time", "start_time", "end_time", "dj", "vendor", "venue_phone", "venue_website"
    - venue: "name", "address", "city", "state", "zip", "phone", "website", "lat", "lng"
    - dj: "name", "vendor"
    - vendor: "name", "website"

Rules:
- "day": day of week (e.g. "Friday") or a date written as YYYY-MM-DD.
- Times in 24-hour HH:MM format. "time" is the full range as written (e.g. "9pm - 1am").
- "state": two-letter US state abbreviation. Infer it from the city only when you are certain.
- If the image is not relevant return {"relevant": false}.
- Output ONLY the JSON object. No explanation, no markdown fences."""

USER_PROMPT_FLYER = "Classify this image and extract the karaoke schedule information.\n\n/no_think"

# Field aliases the model (or older prompts) sometimes use.
_FIELD_ALIASES = {
    "startTime": "start_time",
    "endTime": "end_time",
    "venuePhone": "venue_phone",
    "venueWebsite": "venue_website",
    "djName": "dj",
    "host": "dj",
}

_KIND_FIELDS = {
    CandidateKind.SHOW: {
        "venue", "address", "city", "state", "zip", "day", "time", "start_time",
        "end_time", "dj", "vendor", "venue_phone", "venue_website",
    },
    CandidateKind.VENUE: {"name", "address", "city", "state", "zip", "phone", "website", "lat", "lng"},
    CandidateKind.DJ: {"name", "vendor"},
    CandidateKind.VENDOR: {"name", "website"},
}

_REQUIRED_FIELD = {
    CandidateKind.SHOW: "venue",
    CandidateKind.VENUE: "name",
    CandidateKind.DJ: "name",
    CandidateKind.VENDOR: "name",
}


# ---------------------------------------------------------------------------
# JSON parsing
# ---------------------------------------------------------------------------


def _strip_markdown_fences(text: str) -> str:
    """Remove markdown code fences the model may have added."""
    text = text.strip()
    if text.startswith("```"):
        lines = text.split("\n")
        text = "\n".join(lines[1:])
        if text.endswith("```"):
            text = text[:-3]
        text = text.strip()
    return text


def _repair_json(text: str) -> str:
    """Attempt to fix common model JSON issues."""
    text = re.sub(r",\s*([}\]])", r"\1", text)
    open_braces = text.count("{") - text.count("}")
    open_brackets = text.count("[") - text.count("]")
    text = text.rstrip().rstrip(",")
    text += "]" * max(0, open_brackets)
    text += "}" * max(0, open_braces)
    return text


def _parse_json_object(raw: str) -> dict:
    """Parse the first JSON object in a model response, with repair fallback."""
    text = _strip_markdown_fences(raw)
    if "<think>" in text:
        text = text.split("</think>")[-1].strip()

    start = text.find("{")
    if start == -1:
        raise UnparseableResult(f"No JSON object in response: {raw[:200]!r}")
    end = text.rfind("}")
    candidate = text[start : end + 1] if end > start else text[start:]

    for attempt in (candidate, _repair_json(candidate), _repair_json(text[start:])):
        try:
            parsed = json.loads(attempt)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed
    raise UnparseableResult(f"Could not parse model response as JSON: {raw[:200]!r}")


def _clean_fields(raw: Any, allowed: set[str]) -> dict[str, str]:
    if not isinstance(raw, dict):
        return {}
    fields: dict[str, str] = {}
    for key, value in raw.items():
        key = _FIELD_ALIASES.get(key, key)
        if key not in allowed or value is None or isinstance(value, (dict, list)):
            continue
        text = str(value).strip()
        if text and text.lower() not in {"null", "none", "n/a", "unknown"}:
            fields[key] = text
    return fields


def _coerce_confidence(value: Any) -> float:
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return DEFAULT_CONFIDENCE
    if confidence > 1.0 and confidence <= 100.0:
        confidence /= 100.0
    return min(1.0, max(0.0, confidence))


def _from_legacy_shape(parsed: dict) -> tuple[Optional[CandidateKind], dict[str, Any]]:
    """Map the ``{vendor, dj, show: {...}}`` answer shape onto a single kind."""
    show = parsed.get("show") if isinstance(parsed.get("show"), dict) else {}
    dj = parsed.get("dj")
    vendor = parsed.get("vendor")
    if show.get("venue"):
        fields = dict(show)
        if dj:
            fields.setdefault("dj", dj)
        if vendor:
            fields.setdefault("vendor", vendor)
        return CandidateKind.SHOW, fields
    if dj:
        return CandidateKind.DJ, {"name": dj, "vendor": vendor}
    if vendor:
        return CandidateKind.VENDOR, {"name": vendor}
    return None, {}


def parse_classification(raw: str, source_image: ImageRef) -> Optional[ExtractionCandidate]:
    """
    Turn a model response into a candidate.

    Returns None when the model marks the image as not relevant or the answer
    carries no usable fields. Raises UnparseableResult when the response is not
    a JSON object at all.
    """
    parsed = _parse_json_object(raw)

    if parsed.get("relevant") is False:
        return None

    kind: Optional[CandidateKind]
    raw_kind = str(parsed.get("kind") or "").strip().lower()
    if raw_kind in {k.value for k in CandidateKind}:
        kind = CandidateKind(raw_kind)
        raw_fields = parsed.get("fields") if isinstance(parsed.get("fields"), dict) else parsed
    else:
        kind, raw_fields = _from_legacy_shape(parsed)
    if kind is None:
        return None

    fields = _clean_fields(raw_fields, _KIND_FIELDS[kind])
    if not fields.get(_REQUIRED_FIELD[kind]):
        return None

    return ExtractionCandidate(
        kind=kind,
        fields=fields,
        confidence=_coerce_confidence(parsed.get("confidence", DEFAULT_CONFIDENCE)),
        source_image=source_image,
    )


# ---------------------------------------------------------------------------
# Classifier
# ---------------------------------------------------------------------------


class VisionClassifier:
    """Image classifier backed by an OpenAI-compatible chat-completions endpoint."""

    def __init__(
        self,
        *,
        base_url: str,
        model: str,
        api_key: str = "",
        temperature: float = 0.1,
        timeout_seconds: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._url = f"{base_url.rstrip('/')}/chat/completions"
        self._model = model
        self._api_key = api_key
        self._temperature = temperature
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(connect=30, read=timeout_seconds, write=30, pool=30)
        )

    @classmethod
    def from_settings(cls, settings, client: Optional[httpx.AsyncClient] = None) -> "VisionClassifier":
        return cls(
            base_url=settings.llm_base_url,
            model=settings.llm_model,
            api_key=settings.llm_api_key,
            temperature=settings.llm_temperature,
            timeout_seconds=settings.classifier_timeout_seconds,
            client=client,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def classify(
        self, image_bytes: bytes, mime_type: str, source_image: ImageRef
    ) -> Optional[ExtractionCandidate]:
        """
        Classify one image.

        Returns:
            A candidate, or None when the image is not relevant or the answer
            could not be parsed (logged as a warning).

        Raises:
            ClassifierUnavailable: transient failure, worth retrying.
            ClassifierRejected: the input was refused; retrying will not help.
        """
        if not image_bytes:
            raise ClassifierRejected("Empty image")
        if not mime_type.startswith("image/"):
            raise ClassifierRejected(f"Unsupported media type: {mime_type}")

        try:
            raw = await self._call_llm(image_bytes, mime_type)
            return parse_classification(raw, source_image)
        except UnparseableResult as e:
            logger.warning("Unparseable classification for %s: %s", source_image.url[:80], e)
            return None

    async def _call_llm(self, image_bytes: bytes, mime_type: str) -> str:
        """Send the image to the model and return the raw text response."""
        encoded = base64.b64encode(image_bytes).decode("ascii")
        payload = {
            "model": self._model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT_FLYER},
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": USER_PROMPT_FLYER},
                        {"type": "image_url", "image_url": {"url": f"data:{mime_type};base64,{encoded}"}},
                    ],
                },
            ],
            "temperature": self._temperature,
            "stream": False,
        }
        headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}

        try:
            resp = await self._client.post(self._url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise ClassifierUnavailable(f"Model request failed: {e}") from e

        if resp.status_code in RETRYABLE_STATUS or resp.status_code >= 500:
            raise ClassifierUnavailable(f"Model API error {resp.status_code}: {resp.text[:200]}")
        if resp.status_code >= 400:
            raise ClassifierRejected(f"Model API error {resp.status_code}: {resp.text[:200]}")

        try:
            data = resp.json()
            content = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError):
            return resp.text
        if isinstance(content, list):
            content = "".join(str(part.get("text") or "") for part in content if isinstance(part, dict))
        if content is None:
            return ""
        if not isinstance(content, str):
            raise UnparseableResult(f"Unexpected message content: {type(content).__name__}")
        return content


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


async def main() -> None:
    """CLI: classify a local image file."""
    if len(sys.argv) < 2:
        print("Usage: python -m showparser.extractor <image_file>")
        print("Example: python -m showparser.extractor flyers/friday.jpg")
        sys.exit(1)

    from pathlib import Path

    from showparser.config import settings

    image_file = Path(sys.argv[1])
    if not image_file.exists():
        print(f"File not found: {image_file}")
        sys.exit(1)

    mime_type = mimetypes.guess_type(image_file.name)[0] or "image/jpeg"
    classifier = VisionClassifier.from_settings(settings)
    try:
        candidate = await classifier.classify(
            image_file.read_bytes(), mime_type, ImageRef(url=image_file.resolve().as_uri(), ordinal=0)
        )
    finally:
        await classifier.aclose()

    print(f"\n{'=' * 60}")
    if candidate is None:
        print("NOT RELEVANT")
    else:
        print(f"{candidate.kind.value.upper()} (confidence {candidate.confidence:.2f})")
        print(f"{'=' * 60}")
        for key, value in candidate.fields.items():
            print(f"  {key:<14} {value}")


if __name__ == "__main__":
    asyncio.run(main())
