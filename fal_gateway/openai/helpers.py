import math
import secrets
import string
import time

from fal_gateway.openai.type import ChatCompletionUsage

_ID_ALPHABET = string.ascii_letters + string.digits


def generate_timestamp() -> int:
    return int(time.time())


def generate_completion_id(length: int = 24) -> str:
    return "".join(secrets.choice(_ID_ALPHABET) for _ in range(length))


def estimate_usage(content: str) -> ChatCompletionUsage:
    # No tokenizer for image prompts; a character-count estimate is enough for clients.
    length = len(content or "")
    prompt_tokens = math.ceil(length / 4)
    completion_tokens = math.ceil(length / 2)
    return ChatCompletionUsage(
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        total_tokens=prompt_tokens + completion_tokens,
    )


def image_markdown(url: str) -> str:
    return f"![Generated Image]({url})"
