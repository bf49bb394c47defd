"""
Credit cost model.

Maps model usage to credits. Prices are credits per 1K tokens; every
result is rounded up so a user is never undercharged. Token counts are
estimated from text length with a per-family characters-per-token ratio.
"""

import logging
from decimal import Decimal, ROUND_CEILING
from typing import Dict

logger = logging.getLogger(__name__)

# Model pricing (credits per 1K tokens)
TOKEN_COSTS: Dict[str, Dict[str, Decimal]] = {
    # OpenAI models
    "gpt-3.5-turbo": {"input": Decimal("0.5"), "output": Decimal("1.5")},
    "gpt-4o": {"input": Decimal("2.5"), "output": Decimal("10")},
    "gpt-4": {"input": Decimal("30"), "output": Decimal("60")},
    # Anthropic models
    "claude-3-sonnet": {"input": Decimal("3"), "output": Decimal("15")},
    "claude-3-haiku": {"input": Decimal("0.25"), "output": Decimal("1.25")},
    # Google models
    "gemini-pro": {"input": Decimal("0.5"), "output": Decimal("1.5")},
    "gemini-1.5-pro": {"input": Decimal("3.5"), "output": Decimal("10.5")},
    "gemini-1.5-flash": {"input": Decimal("0.075"), "output": Decimal("0.3")},
    "gemini-1.5-flash-8b": {"input": Decimal("0.0375"), "output": Decimal("0.15")},
    "gemini-2.0-flash": {"input": Decimal("0.075"), "output": Decimal("0.3")},
    "gemini-2.0-flash-lite": {"input": Decimal("0.0375"), "output": Decimal("0.15")},
    "gemini-2.5-flash-preview-05-20": {"input": Decimal("0.075"), "output": Decimal("0.3")},
    "gemini-2.5-flash-preview": {"input": Decimal("0.075"), "output": Decimal("0.3")},
    "gemini-2.5-pro-preview": {"input": Decimal("3.5"), "output": Decimal("10.5")},
    "gemini-2.5-pro-preview-06-05": {"input": Decimal("3.5"), "output": Decimal("10.5")},
    "text-embedding-004": {"input": Decimal("0.01"), "output": Decimal("0.01")},
    "gemini-embedding-exp-03-07": {"input": Decimal("0.01"), "output": Decimal("0.01")},
    "aqa": {"input": Decimal("1.0"), "output": Decimal("2.0")},
    "gemma-3": {"input": Decimal("0.05"), "output": Decimal("0.1")},
    "gemma-3n": {"input": Decimal("0.025"), "output": Decimal("0.05")},
    # Aliases
    "gpt-3.5": {"input": Decimal("0.5"), "output": Decimal("1.5")},
    "claude-sonnet": {"input": Decimal("3"), "output": Decimal("15")},
    "gemini-flash": {"input": Decimal("0.075"), "output": Decimal("0.3")},
}

# Unknown models are billed at this rate on prompt + completion tokens
DEFAULT_CREDITS_PER_1K = Decimal("5")

# Gemini's SentencePiece tokenizer packs more text per token
GEMINI_CHARS_PER_TOKEN = Decimal("3.5")
DEFAULT_CHARS_PER_TOKEN = Decimal("4")

# Headroom added to the per-character running estimate used while streaming
STREAMING_ESTIMATE_MARGIN = Decimal("0.10")

_THOUSAND = Decimal(1000)


def chars_per_token(model_id: str) -> Decimal:
    """Characters per token for a model family."""
    if model_id.startswith("gemini"):
        return GEMINI_CHARS_PER_TOKEN
    return DEFAULT_CHARS_PER_TOKEN


def _ceil(value: Decimal) -> int:
    return int(value.to_integral_value(rounding=ROUND_CEILING))


def estimate_tokens(text: str, model_id: str) -> int:
    """
    Estimate the token count of a text.

    Rounded up, so the estimate never undercounts a partial token.
    """
    if not text:
        return 0
    return _ceil(Decimal(len(text)) / chars_per_token(model_id))


def calculate_token_cost(model_id: str, prompt_tokens: int, completion_tokens: int) -> int:
    """
    Credits for a request with known token counts.

    Args:
        model_id: Model identifier
        prompt_tokens: Input tokens
        completion_tokens: Output tokens

    Returns:
        Credits, rounded up
    """
    costs = TOKEN_COSTS.get(model_id)
    if costs is None:
        logger.warning(f"Unknown model {model_id}, using default pricing")
        return _ceil(Decimal(prompt_tokens + completion_tokens) / _THOUSAND * DEFAULT_CREDITS_PER_1K)

    input_cost = Decimal(prompt_tokens) / _THOUSAND * costs["input"]
    output_cost = Decimal(completion_tokens) / _THOUSAND * costs["output"]
    return _ceil(input_cost + output_cost)


def calculate_streaming_cost(model_id: str, prompt_tokens: int, completion_text: str) -> int:
    """Credits for a streamed response: known prompt, completion estimated from text."""
    completion_tokens = estimate_tokens(completion_text, model_id)
    return calculate_token_cost(model_id, prompt_tokens, completion_tokens)


def estimate_request_cost(model_id: str, prompt: str, estimated_response_length: int = 500) -> int:
    """Pre-flight credit estimate for a prompt and an expected response length in characters."""
    prompt_tokens = estimate_tokens(prompt, model_id)
    completion_tokens = estimate_tokens("x" * estimated_response_length, model_id)
    return calculate_token_cost(model_id, prompt_tokens, completion_tokens)


def streaming_estimate_per_char(model_id: str) -> Decimal:
    """
    Running credit estimate per generated character.

    Output price spread over the family's characters per token, plus
    STREAMING_ESTIMATE_MARGIN so batch spends lean high rather than low.
    """
    costs = TOKEN_COSTS.get(model_id)
    output_price = costs["output"] if costs else DEFAULT_CREDITS_PER_1K
    per_char = output_price / _THOUSAND / chars_per_token(model_id)
    return per_char * (1 + STREAMING_ESTIMATE_MARGIN)


def credits(value: Decimal) -> int:
    """Round a fractional credit amount up to whole credits."""
    if value <= 0:
        return 0
    return _ceil(value)
