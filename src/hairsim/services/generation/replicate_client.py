"""Replicate API client for hairstyle image generation with error classification."""

import asyncio
import io
from dataclasses import dataclass
from typing import Any, Optional, Protocol

import replicate
from replicate.exceptions import ReplicateError as ReplicateAPIError

from hairsim.services.exceptions import (
    ProviderError,
    ProviderRejectedError,
    ProviderTimeoutError,
    ProviderUnavailableError,
)

DEFAULT_MODEL_VERSION = "black-forest-labs/flux-kontext-pro"

# Descriptors go straight into the prompt; keep them short
MAX_DESCRIPTOR_LENGTH = 200


@dataclass(frozen=True)
class GenerationParams:
    """Requested transformation for one generation."""

    style: str
    color: str = ""
    model: str = "replicate"
    gender: str = "male"


class HairstyleProvider(Protocol):
    """External AI call: image bytes + style parameters in, result image URL out."""

    async def generate(self, image_bytes: bytes, params: GenerationParams) -> str: ...


def build_prompt(params: GenerationParams) -> str:
    """Build the image-editing prompt from the requested style.

    Raises:
        ValueError: If the style is empty or a descriptor is too long
    """
    if not params.style or not params.style.strip():
        raise ValueError("Hairstyle cannot be empty")

    for name, value in (("style", params.style), ("color", params.color)):
        if value and len(value) > MAX_DESCRIPTOR_LENGTH:
            raise ValueError(
                f"{name} exceeds maximum length of {MAX_DESCRIPTOR_LENGTH} characters "
                f"(got {len(value)})"
            )

    description = params.style.strip()
    color = (params.color or "").strip()
    if color and color.lower() != "random":
        description = f"{description}, {color} hair color"

    gender = (params.gender or "").strip()
    subject = "this person"
    if gender and gender.lower() not in ("auto-detect", "auto"):
        subject = f"this {gender.lower()} person"

    return (
        f"Transform {subject}'s hairstyle to: {description}. "
        "Keep the person's face and other features unchanged. "
        "Only modify the hair to match the description."
    )


def classify_error(exception: Exception) -> ProviderError:
    """Classify exception into a typed provider failure.

    Classification rules:
        - Timeout errors → ProviderTimeoutError
        - 429 (rate limit) → ProviderUnavailableError
        - 5xx / service unavailable → ProviderUnavailableError
        - 401/403 (authentication) → ProviderRejectedError
        - Content policy violations → ProviderRejectedError
        - 400/422 (invalid input) → ProviderRejectedError
        - Connection errors → ProviderUnavailableError
        - Anything else → ProviderUnavailableError
    """
    error_message = str(exception)
    error_message_lower = error_message.lower()

    if isinstance(exception, (TimeoutError, asyncio.TimeoutError)) or (
        "timeout" in error_message_lower or "timed out" in error_message_lower
    ):
        return ProviderTimeoutError(f"Provider timeout: {error_message}")

    if "429" in error_message or "rate limit" in error_message_lower:
        return ProviderUnavailableError(f"Rate limit exceeded: {error_message}")

    if (
        "503" in error_message
        or "502" in error_message
        or "500" in error_message
        or "service unavailable" in error_message_lower
    ):
        return ProviderUnavailableError(f"Service unavailable: {error_message}")

    if (
        "401" in error_message
        or "403" in error_message
        or "unauthorized" in error_message_lower
        or "forbidden" in error_message_lower
        or "authentication" in error_message_lower
        or "invalid api token" in error_message_lower
    ):
        return ProviderRejectedError(f"Authentication failed: {error_message}")

    if (
        "content policy" in error_message_lower
        or "nsfw" in error_message_lower
        or "safety" in error_message_lower
        or "inappropriate" in error_message_lower
    ):
        return ProviderRejectedError(f"Content policy violation: {error_message}")

    if "400" in error_message or "422" in error_message or "invalid" in error_message_lower:
        return ProviderRejectedError(f"Invalid request: {error_message}")

    if isinstance(exception, (ConnectionError, OSError)):
        return ProviderUnavailableError(f"Connection error: {error_message}")

    return ProviderUnavailableError(f"Provider error: {error_message}")


class ReplicateHairstyleProvider:
    """HairstyleProvider backed by a Replicate image-editing model."""

    def __init__(
        self,
        api_token: str,
        model_version: Optional[str] = None,
        model_aliases: Optional[dict[str, str]] = None,
    ):
        """Initialize provider.

        Args:
            api_token: Replicate API authentication token
            model_version: Default model identifier
            model_aliases: Map of client-facing model ids to Replicate model identifiers
        """
        self.api_token = api_token
        self.model_version = model_version or DEFAULT_MODEL_VERSION
        self.model_aliases = model_aliases or {}

    def resolve_model(self, model: str) -> str:
        return self.model_aliases.get((model or "").strip().lower(), self.model_version)

    async def generate(self, image_bytes: bytes, params: GenerationParams) -> str:
        """Generate a new-hairstyle image using Replicate.

        Args:
            image_bytes: Decoded source photo
            params: Requested style, color, model and gender

        Returns:
            Result image URL from Replicate CDN

        Raises:
            ProviderUnavailableError: Network, rate limit or service failure
            ProviderTimeoutError: Provider-side timeout
            ProviderRejectedError: Auth failure, policy violation or invalid input
        """
        if not self.api_token:
            raise ProviderRejectedError("REPLICATE_API_TOKEN not configured")
        if not image_bytes:
            raise ProviderRejectedError("Image is required")

        try:
            prompt = build_prompt(params)
        except ValueError as e:
            raise ProviderRejectedError(str(e)) from e

        model = self.resolve_model(params.model)

        try:
            # SDK is synchronous; run it in the thread pool with a per-call client
            def _run_replicate() -> Any:
                client = replicate.Client(api_token=self.api_token)
                return client.run(
                    model,
                    input={
                        "prompt": prompt,
                        "input_image": io.BytesIO(image_bytes),
                        "output_format": "jpg",
                    },
                )

            output = await asyncio.to_thread(_run_replicate)

        except ReplicateAPIError as e:
            raise classify_error(e) from e

        except (ConnectionError, OSError, TimeoutError) as e:
            raise classify_error(e) from e

        except Exception as e:
            raise ProviderUnavailableError(f"Unexpected error: {e}") from e

        # Output format varies by model: URL string, FileOutput, or a list of either
        if isinstance(output, list) and len(output) > 0:
            output = output[0]
        if output is None or output == []:
            raise ProviderRejectedError("Provider returned no image")

        image_url = str(getattr(output, "url", output))
        if not image_url:
            raise ProviderRejectedError("Provider returned no image")
        return image_url

