"""
Content Transform Module
The single capability the pipeline consumes from its environment.

Every perception, rendering, judging and refinement call goes through a
ContentTransform. The Gemini implementation is the default backend;
swapping it only requires another subclass.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions
from rich.console import Console

from config import (
    GOOGLE_API_KEY,
    LOGIC_MODEL,
    VISION_MODEL,
    MAX_OUTPUT_TOKENS,
    REQUEST_TIMEOUT,
)
from .usage import get_tracker, extract_usage_from_response


console = Console()


class ErrorKind(str, Enum):
    """Classification of a failed transform call."""
    RATE_LIMITED = "rate-limited"
    UNAVAILABLE = "unavailable"
    INTERNAL_TRANSIENT = "internal-transient"
    FATAL = "fatal"
    INVALID_AUTH = "invalid-auth"


TRANSIENT_KINDS = frozenset({
    ErrorKind.RATE_LIMITED,
    ErrorKind.UNAVAILABLE,
    ErrorKind.INTERNAL_TRANSIENT,
})


class TransformError(Exception):
    """A transform call failed with a classified cause."""

    def __init__(self, kind: ErrorKind, message: str = ""):
        super().__init__(message or kind.value)
        self.kind = kind
        self.message = message or kind.value

    @property
    def is_transient(self) -> bool:
        return self.kind in TRANSIENT_KINDS

    def __str__(self):
        return f"[{self.kind.value}] {self.message}"


@dataclass
class ImageInput:
    """An image handed to the transform."""
    data: bytes
    mime_type: str = "image/png"


@dataclass
class TransformRequest:
    """Inputs and options for a single transform call."""
    text: str
    images: list[ImageInput] = field(default_factory=list)
    schema: Optional[dict] = None
    tools: Optional[list[str]] = None
    max_output_size: int = MAX_OUTPUT_TOKENS
    quality_hints: dict = field(default_factory=dict)
    stage: str = "transform"


@dataclass
class TransformResponse:
    """What came back from the transform."""
    text: Optional[str] = None
    images: list[bytes] = field(default_factory=list)
    execution_outputs: list[str] = field(default_factory=list)

    @property
    def first_image(self) -> Optional[bytes]:
        return self.images[0] if self.images else None


class ContentTransform:
    """
    Opaque perception/rendering capability.

    Implementations must raise TransformError for every failure so the
    resilience layer can tell transient failures from fatal ones.
    """

    async def invoke(self, request: TransformRequest) -> TransformResponse:
        raise NotImplementedError("Subclasses must implement invoke().")


def classify_error(error: Exception) -> ErrorKind:
    """Map an upstream exception onto an ErrorKind."""
    if isinstance(error, TransformError):
        return error.kind
    if isinstance(error, google_exceptions.ResourceExhausted):
        return ErrorKind.RATE_LIMITED
    if isinstance(error, (google_exceptions.ServiceUnavailable, google_exceptions.DeadlineExceeded)):
        return ErrorKind.UNAVAILABLE
    if isinstance(error, google_exceptions.InternalServerError):
        return ErrorKind.INTERNAL_TRANSIENT
    if isinstance(error, (google_exceptions.Unauthenticated, google_exceptions.PermissionDenied)):
        return ErrorKind.INVALID_AUTH

    message = str(error)
    if "API key not valid" in message or "API_KEY_INVALID" in message:
        return ErrorKind.INVALID_AUTH

    code = getattr(error, "code", None) or getattr(error, "status", None)
    if code == 429:
        return ErrorKind.RATE_LIMITED
    if code == 503:
        return ErrorKind.UNAVAILABLE
    if code == 500:
        return ErrorKind.INTERNAL_TRANSIENT
    if code in (401, 403):
        return ErrorKind.INVALID_AUTH
    return ErrorKind.FATAL


class GeminiTransform(ContentTransform):
    """ContentTransform backed by the Gemini API."""

    def __init__(
        self,
        api_key: str = None,
        logic_model: str = LOGIC_MODEL,
        vision_model: str = VISION_MODEL,
        timeout: int = REQUEST_TIMEOUT,
    ):
        genai.configure(api_key=api_key or GOOGLE_API_KEY)
        self.logic_model = logic_model
        self.vision_model = vision_model
        self.timeout = timeout
        self._models: dict[str, genai.GenerativeModel] = {}

    def _model_for(self, request: TransformRequest) -> tuple[str, genai.GenerativeModel]:
        """Pick the model from the 'model' quality hint ('logic' or 'vision')."""
        model_name = self.vision_model if request.quality_hints.get("model") == "vision" else self.logic_model
        if model_name not in self._models:
            self._models[model_name] = genai.GenerativeModel(model_name)
        return model_name, self._models[model_name]

    def _build_contents(self, request: TransformRequest) -> list:
        contents = [{"mime_type": image.mime_type, "data": image.data} for image in request.images]

        prompt = request.text
        hints = request.quality_hints
        if hints.get("image_size") or hints.get("aspect_ratio"):
            prompt += (
                f"\n\nOUTPUT IMAGE: {hints.get('image_size', 'native')} resolution, "
                f"aspect ratio {hints.get('aspect_ratio', 'unchanged')}."
            )
        contents.append(prompt)
        return contents

    def _build_generation_config(self, request: TransformRequest) -> dict:
        generation_config = {"max_output_tokens": request.max_output_size}
        if "temperature" in request.quality_hints:
            generation_config["temperature"] = request.quality_hints["temperature"]
        if request.schema is not None:
            generation_config["response_mime_type"] = "application/json"
            generation_config["response_schema"] = request.schema
        return generation_config

    async def invoke(self, request: TransformRequest) -> TransformResponse:
        model_name, model = self._model_for(request)

        start_time = time.time()
        try:
            response = await model.generate_content_async(
                self._build_contents(request),
                generation_config=self._build_generation_config(request),
                tools=request.tools or None,
                request_options={"timeout": self.timeout},
            )
        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            kind = classify_error(e)
            get_tracker().add_call(request.stage, model_name, 0, 0, duration_ms, error_kind=kind.value)
            raise TransformError(kind, str(e)) from e
        duration_ms = (time.time() - start_time) * 1000

        input_tokens, output_tokens = extract_usage_from_response(response)
        get_tracker().add_call(
            stage=request.stage,
            model=model_name,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            duration_ms=duration_ms,
        )

        if not response.candidates or not response.candidates[0].content.parts:
            finish_reason = response.candidates[0].finish_reason if response.candidates else "UNKNOWN"
            raise TransformError(ErrorKind.FATAL, f"Empty response from API (finish_reason: {finish_reason})")

        return self._parse_parts(response.candidates[0].content.parts)

    def _parse_parts(self, parts) -> TransformResponse:
        texts = []
        images = []
        execution_outputs = []

        for part in parts:
            inline = getattr(part, "inline_data", None)
            if inline is not None and inline.data and inline.mime_type.startswith("image/"):
                images.append(inline.data)
                continue

            result = getattr(part, "code_execution_result", None)
            if result is not None and result.output:
                execution_outputs.append(result.output)
                continue

            if getattr(part, "text", None):
                texts.append(part.text)

        return TransformResponse(
            text="".join(texts) if texts else None,
            images=images,
            execution_outputs=execution_outputs,
        )
