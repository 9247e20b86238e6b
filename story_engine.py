"""
Page Batch Studio — Story Engine
Uses the Google Gemini API to draw manga pages and to plan page scripts.

- Page images: Nanobanana Pro / Flash image models, with character
  reference images passed inline next to the page prompt.
- Page plans: text models with a JSON response schema (one object per page).

Failures are raised as GenerationError tagged rate_limited, quota_exceeded
or other, so the scheduler can decide between backoff, fallback and giving up.
"""
import os
import re
from dataclasses import dataclass
from typing import Optional

from pydantic import BaseModel

# Google GenAI SDK
from google import genai
from google.genai import errors, types

# Models
IMAGE_MODEL_PRIMARY = os.environ.get("IMAGE_MODEL_PRIMARY", "gemini-3-pro-image-preview")
IMAGE_MODEL_FAST = os.environ.get("IMAGE_MODEL_FAST", "gemini-2.5-flash-image")
PLAN_MODEL_PRIMARY = os.environ.get("PLAN_MODEL_PRIMARY", "gemini-3-pro-preview")
PLAN_MODEL_FALLBACK = os.environ.get("PLAN_MODEL_FALLBACK", "gemini-2.5-flash")

# Tried in order
IMAGE_MODEL_CHAIN = [IMAGE_MODEL_PRIMARY, IMAGE_MODEL_FAST]
PLAN_MODEL_CHAIN = [PLAN_MODEL_PRIMARY, PLAN_MODEL_FALLBACK]

# Free-tier limits per model. safe_delay is the gap (seconds) between
# submissions in conservative mode, sized to rpm_free.
MODEL_CATALOG = {
    IMAGE_MODEL_PRIMARY: {
        "name": "Gemini 3.0 Pro Image",
        "daily_free": 50,
        "rpm_free": 2,
        "safe_delay": 35.0,
        "concurrency": 1,
    },
    IMAGE_MODEL_FAST: {
        "name": "Gemini 2.5 Flash Image",
        "daily_free": 1500,
        "rpm_free": 15,
        "safe_delay": 4.5,
        "concurrency": 3,
    },
    PLAN_MODEL_PRIMARY: {
        "name": "Gemini 3.0 Pro",
        "daily_free": 100,
        "rpm_free": 5,
        "safe_delay": 15.0,
        "concurrency": 1,
    },
    PLAN_MODEL_FALLBACK: {
        "name": "Gemini 2.5 Flash",
        "daily_free": 250,
        "rpm_free": 10,
        "safe_delay": 6.0,
        "concurrency": 1,
    },
}
DEFAULT_SAFE_DELAY = 5.0

PLAN_MAX_OUTPUT_TOKENS = 65536

SYSTEM_INSTRUCTION = """You are a professional manga artist AI.
Character reference images are attached as image parts, each followed by "Filename: <name>".
When the prompt mentions a character in brackets, e.g. [Alex Mercer] or [REF_IMG_1: "Alex Mercer.png"],
find the matching reference image and reproduce its face, hair, build and outfit exactly,
keeping the character consistent in every panel.

Output: full color, tall portrait page (1:1.6). Speech bubble text must be large, bold and legible on a phone.
Split the page into panels following the template given in ◆【Panel_Layout】."""

PLAN_SYSTEM_INSTRUCTION = """You are a professional manga editor and storyboard writer.
You turn a scenario into a page-by-page script. Every page gets a layout template and a detailed
drawing prompt. Characters are always referred to in brackets using the exact reference filenames provided."""

COVER_INSTRUCTION = """

◆【CRITICAL_COVER_INSTRUCTION】:
  1. This is a manga COVER PAGE.
  2. Do NOT use speech bubbles.
  3. RENDER THE TITLE TEXT (found in the prompt) AS A PROFESSIONAL, DECORATIVE MANGA LOGO.
  4. Integrate the typography artistically into the illustration."""

RATE_LIMITED = "rate_limited"
QUOTA_EXCEEDED = "quota_exceeded"
OTHER = "other"

RETRY_HINT_PATTERN = re.compile(r'retry in ([\d.]+)\s*s', re.IGNORECASE)
DAILY_QUOTA_PATTERN = re.compile(r'per[\s_]*day|daily', re.IGNORECASE)

_client = None


class PagePlanItem(BaseModel):
    pageNumber: str
    template: str
    prompt: str


class GenerationError(Exception):
    """A failed call to the generation service, tagged with its error class."""

    def __init__(self, message, kind=OTHER, retry_after=None):
        super().__init__(message)
        self.kind = kind
        self.retry_after = retry_after

    @property
    def retryable(self):
        return self.kind in (RATE_LIMITED, QUOTA_EXCEEDED)


@dataclass
class GenerationResult:
    text: Optional[str] = None
    image_bytes: Optional[bytes] = None
    mime_type: Optional[str] = None


def model_info(model_id):
    """Catalog entry for a model; unknown models get the pro image limits."""
    info = MODEL_CATALOG.get(model_id)
    if info is None:
        info = dict(MODEL_CATALOG[IMAGE_MODEL_PRIMARY])
        info["name"] = model_id
        info["safe_delay"] = DEFAULT_SAFE_DELAY
    return info


def parse_retry_after(message):
    """'Please retry in 21.23s' → 21.23"""
    match = RETRY_HINT_PATTERN.search(message or "")
    if match:
        try:
            return float(match.group(1))
        except ValueError:
            return None
    return None


def classify_error(exc):
    """Map any exception from the SDK onto a GenerationError."""
    if isinstance(exc, GenerationError):
        return exc

    message = str(exc) or exc.__class__.__name__
    code = getattr(exc, "code", None)
    status = str(getattr(exc, "status", "") or "")

    is_rate_limit = (
        code == 429
        or status == "RESOURCE_EXHAUSTED"
        or "429" in message
        or "RESOURCE_EXHAUSTED" in message
        or "quota" in message.lower()
    )
    if not is_rate_limit:
        return GenerationError(message, OTHER)

    kind = QUOTA_EXCEEDED if DAILY_QUOTA_PATTERN.search(message) else RATE_LIMITED
    return GenerationError(message, kind, retry_after=parse_retry_after(message))


def init_client():
    """Initialize the Google GenAI client."""
    global _client
    if _client is None:
        api_key = os.environ.get("GEMINI_API_KEY") or os.environ.get("GOOGLE_API_KEY")
        if not api_key:
            raise ValueError("GEMINI_API_KEY or GOOGLE_API_KEY must be set")
        _client = genai.Client(api_key=api_key.strip())
    return _client


def text_part(text):
    return {"text": text}


def image_part(data, mime_type):
    return {"inline_data": {"data": data, "mime_type": mime_type}}


def _to_sdk_part(part):
    if "inline_data" in part:
        blob = part["inline_data"]
        return types.Part.from_bytes(data=blob["data"], mime_type=blob["mime_type"])
    return types.Part.from_text(text=part["text"])


class GeminiService:
    """Content generation service backed by google-genai."""

    def __init__(self, client=None):
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = init_client()
        return self._client

    def generate(self, model, parts, response_schema=None, system_instruction=None,
                 max_output_tokens=None):
        """
        Send one request.

        With response_schema the model is asked for JSON and the raw text is
        returned (the caller repairs it). Without, the first image part is
        returned.
        """
        if response_schema is not None:
            config = types.GenerateContentConfig(
                system_instruction=system_instruction,
                max_output_tokens=max_output_tokens,
                response_mime_type="application/json",
                response_schema=response_schema,
            )
        else:
            config = types.GenerateContentConfig(
                system_instruction=system_instruction,
                response_modalities=["Image"],
                image_config=types.ImageConfig(aspect_ratio="9:16"),
            )

        contents = [types.Content(role="user", parts=[_to_sdk_part(p) for p in parts])]

        try:
            response = self.client.models.generate_content(
                model=model,
                contents=contents,
                config=config,
            )
        except errors.APIError as e:
            raise classify_error(e) from e

        if response_schema is not None:
            return self._text_result(response)
        return self._image_result(response)

    def _text_result(self, response):
        text = response.text
        if text is None:
            raise GenerationError(f"Gemini returned empty response. Reason: {_finish_reason(response)}")

        finish_reason = _finish_reason(response)
        if finish_reason and finish_reason not in ("STOP", "FinishReason.STOP", "1"):
            print(f"[story_engine] WARNING: finish_reason={finish_reason}, response may be truncated ({len(text)} chars)")
        return GenerationResult(text=text)

    def _image_result(self, response):
        text_response = ""
        if response.candidates and response.candidates[0].content and response.candidates[0].content.parts:
            for part in response.candidates[0].content.parts:
                if part.inline_data is not None and part.inline_data.data:
                    return GenerationResult(
                        image_bytes=part.inline_data.data,
                        mime_type=part.inline_data.mime_type or "image/png",
                    )
                if part.text:
                    text_response += part.text

        if text_response:
            raise GenerationError(f'Model returned text instead of image: "{text_response[:200]}..."')

        reason = _finish_reason(response)
        if reason:
            raise GenerationError(f"Generation stopped. Reason: {reason}")
        raise GenerationError("No image generated (Empty response).")


def _finish_reason(response):
    candidates = getattr(response, "candidates", None)
    if candidates:
        reason = getattr(candidates[0], "finish_reason", None)
        if reason is not None:
            return str(reason)
    feedback = getattr(response, "prompt_feedback", None)
    if feedback:
        return f"prompt_feedback={feedback}"
    return None


def build_page_parts(page, references):
    """
    Content parts for one page image.

    Reference images go first, each labelled with its filename so the model
    can match [Name] mentions, then the layout and the page prompt.
    """
    parts = []

    if references:
        parts.append(text_part("Reference Characters (Strictly adhere to these visual designs):"))
        for asset in references:
            parts.append(image_part(asset.image_bytes, asset.mime_type))
            parts.append(text_part(f"Filename: {asset.name}"))
        parts.append(text_part("\n--- End References ---\n"))

    prompt_text = f"\n◆【Panel_Layout】: {page.template}\n{page.prompt}"
    if page.template and "cover" in page.template.lower():
        prompt_text += COVER_INSTRUCTION

    parts.append(text_part(prompt_text))
    return parts


def build_plan_parts(request, blueprint_text, expected_labels, assets=None):
    """Content parts for a page-plan (script) request."""
    assets = assets or []
    count = len(expected_labels)

    title_context = "\n".join([
        f"Series Title: {request.title or 'N/A'}",
        f"Subtitle: {request.subtitle or 'N/A'}",
        f"Author: {request.author or 'N/A'}",
        f"Chapter Title: {request.chapter_title or 'N/A'}",
    ])

    mapping = "\n".join(
        f'ID: [REF_IMG_{i + 1}] => Use Filename: "{a.name}"' for i, a in enumerate(assets)
    ) or "None"

    prompt = f"""
Request Details:
- Mode: {request.mode}
{title_context}
- Target Audience: {request.target or 'General'}
- Genre: {request.genre or 'AI choice'}
- **REQUIRED PAGE COUNT: {count} PAGES TOTAL** (Including Cover if requested)
- World Settings: {request.world_settings or 'N/A'}

**PAGE ALLOCATION BLUEPRINT (Execute ALL {count} items)**:
{blueprint_text}

**CRITICAL INSTRUCTION ON BATCH GENERATION**:
You MUST output a single JSON array containing EXACTLY {count} objects, one per blueprint line.
Do not skip, merge or summarize pages. Process ALL pages from "{expected_labels[0] if expected_labels else ''}" to "{expected_labels[-1] if expected_labels else ''}".

**OUTPUT FORMAT**:
[
  {{ "pageNumber": "Page 1", "template": "T01_CHAPTER_COVER", "prompt": "..." }},
  ...
]

Use the EXACT filenames below when referring to characters in brackets.

Scenario:
{request.scenario}

Reference Character Images (ID Mapping):
{mapping}
"""

    parts = [text_part(prompt)]
    for i, asset in enumerate(assets):
        parts.append(image_part(asset.image_bytes, asset.mime_type))
        parts.append(text_part(f"[Attachment {i + 1}: {asset.name}]"))
    return parts


def plan_response_schema():
    return list[PagePlanItem]
