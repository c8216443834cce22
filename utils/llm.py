"""
OpenAI helpers — the content provider and the image provider.

Both raise ``StageFailure`` subclasses only; every SDK exception is
classified in ``provider_failure`` so the stages never see raw OpenAI
errors.
"""

from __future__ import annotations

import base64
import logging
import time

import openai
from openai import OpenAI, RateLimitError

import config
from models.errors import (
    ConfigurationError,
    ContentPolicyRejection,
    ProviderTimeout,
    RejectedRequest,
    StageFailure,
    TransientProviderError,
)

log = logging.getLogger(__name__)

_client: OpenAI | None = None


def get_client() -> OpenAI:
    global _client
    if not config.OPENAI_API_KEY:
        raise ConfigurationError("OPENAI_API_KEY is not configured")
    if _client is None:
        # SDK-level retries are off: a timed-out call must not be silently re-sent
        _client = OpenAI(api_key=config.OPENAI_API_KEY, max_retries=0)
    return _client


BASE_DELAY = config.LLM_BASE_DELAY_SEC

CONTENT_POLICY_CODES = {"content_policy_violation", "moderation_blocked"}

# 4xx statuses that may succeed on a later attempt
RETRYABLE_CLIENT_STATUSES = {408, 409, 429}


def provider_failure(exc: openai.OpenAIError, timeout_sec: float | None = None) -> StageFailure:
    """Map an OpenAI SDK exception onto the pipeline's error taxonomy."""
    # APITimeoutError subclasses APIConnectionError, so it goes first
    if isinstance(exc, openai.APITimeoutError):
        if timeout_sec:
            return ProviderTimeout(f"Provider timed out after {timeout_sec:g}s", timeout_sec=timeout_sec)
        return ProviderTimeout("Provider timed out")
    if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError, openai.NotFoundError)):
        return ConfigurationError(f"Provider rejected credentials or model: {exc}")
    if isinstance(exc, openai.BadRequestError) and getattr(exc, "code", None) in CONTENT_POLICY_CODES:
        return ContentPolicyRejection(f"Provider content policy rejection: {exc}")
    if isinstance(exc, openai.APIStatusError):
        if exc.status_code < 500 and exc.status_code not in RETRYABLE_CLIENT_STATUSES:
            return RejectedRequest(
                f"Provider rejected the request ({exc.status_code}): {exc}", status_code=exc.status_code,
            )
        kind = "client" if exc.status_code < 500 else "server"
        return TransientProviderError(
            f"Provider {kind} error {exc.status_code}: {exc}", status_code=exc.status_code,
        )
    if isinstance(exc, openai.APIConnectionError):
        return TransientProviderError(f"Provider unreachable: {exc}")
    return TransientProviderError(f"Provider call failed: {exc}")


def chat(
    system: str,
    user: str,
    model: str | None = None,
    json_mode: bool = False,
    temperature: float = 0.3,
    max_tokens: int = 4096,
    timeout: float | None = None,
) -> str:
    """Send a chat completion request and return the assistant message.

    Retries up to LLM_RATE_LIMIT_RETRIES times on rate limit (429) errors
    with exponential backoff; every other failure is raised at once.
    """
    client = get_client()
    if timeout is not None:
        client = client.with_options(timeout=timeout)
    kwargs: dict = {
        "model": model or config.OPENAI_MODEL,
        "messages": [
            {"role": "system", "content": system},
            {"role": "user", "content": user},
        ],
        "temperature": temperature,
        "max_tokens": max_tokens,
    }
    if json_mode:
        kwargs["response_format"] = {"type": "json_object"}

    retries = config.LLM_RATE_LIMIT_RETRIES
    for attempt in range(retries + 1):
        try:
            resp = client.chat.completions.create(**kwargs)
            break
        except RateLimitError as e:
            if attempt == retries:
                raise provider_failure(e) from e
            delay = BASE_DELAY * (2 ** attempt)
            log.warning(
                "Rate limited (attempt %d/%d), retrying in %ds: %s",
                attempt + 1, retries + 1, delay, e,
            )
            time.sleep(delay)
        except openai.OpenAIError as e:
            raise provider_failure(e, timeout_sec=timeout) from e

    choice = resp.choices[0]
    refusal = getattr(choice.message, "refusal", None)
    if choice.finish_reason == "content_filter" or refusal:
        raise ContentPolicyRejection(f"Provider refused the request: {refusal or 'content filter'}")
    if choice.finish_reason == "length":
        raise TransientProviderError("Provider response was truncated at the token limit")
    return choice.message.content or ""


def generate_image(
    prompt: str,
    reference: bytes | None = None,
    timeout: float | None = None,
    model: str | None = None,
    size: str | None = None,
) -> bytes:
    """Generate one image and return its raw bytes.

    With a reference image the edit endpoint is used so the result keeps
    the reference's look; without one a plain generation is requested.
    """
    client = get_client()
    if timeout is not None:
        client = client.with_options(timeout=timeout)
    model = model or config.OPENAI_IMAGE_MODEL
    size = size or config.IMAGE_SIZE

    try:
        if reference:
            resp = client.images.edit(
                model=model,
                image=("reference.jpg", reference, "image/jpeg"),
                prompt=prompt,
                size=size,
            )
        else:
            resp = client.images.generate(model=model, prompt=prompt, size=size, n=1)
    except openai.OpenAIError as e:
        raise provider_failure(e, timeout_sec=timeout) from e

    b64 = resp.data[0].b64_json if resp.data else None
    if not b64:
        raise TransientProviderError("No image data received from image provider")
    return base64.b64decode(b64)
