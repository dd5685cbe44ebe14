"""
Token counting for provider calls.

Holds exact counts reported by the provider and a rough pre-call estimate
used for cost ceilings.
"""

from dataclasses import dataclass

# Rough average for English text with OpenAI tokenizers
CHARS_PER_TOKEN = 4


@dataclass(frozen=True)
class TokenUsage:
    """Token usage reported by the provider for one completion."""
    prompt_tokens: int
    completion_tokens: int

    @property
    def total_tokens(self) -> int:
        """Total tokens used (prompt + completion)."""
        return self.prompt_tokens + self.completion_tokens

    @classmethod
    def from_response_usage(cls, usage) -> "TokenUsage":
        """Build from an OpenAI ``CompletionUsage`` object."""
        return cls(
            prompt_tokens=int(usage.prompt_tokens or 0),
            completion_tokens=int(usage.completion_tokens or 0),
        )


def estimate_tokens(*texts: str) -> int:
    """Upper-leaning token estimate for prompt text, before the call is made."""
    chars = sum(len(text) for text in texts if text)
    return -(-chars // CHARS_PER_TOKEN)
