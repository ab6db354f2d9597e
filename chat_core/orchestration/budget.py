"""上下文窗口预算。

真正的分词由推理引擎负责，这一层拿不到 tokenizer，
因此用固定的"字符/token"比例 R 估算：

    budget_chars = floor(C * f * R)

从最新的消息往回累加字符数，加入某条消息会超出预算时就停下（从不截断消息内部），
保留下来的消息按从旧到新的顺序返回。回答预算为：

    max(min_answer, C - ceil((chars_used + prompt_len) / R) - answer_margin)
"""

import math
from dataclasses import dataclass
from typing import List, Sequence

from chat_core.domain.exceptions import ValidationError
from chat_core.domain.models import Message


DEFAULT_HISTORY_FRACTION = 0.7
DEFAULT_ANSWER_MARGIN = 100
DEFAULT_MIN_ANSWER = 200


@dataclass
class BudgetResult:
    trimmed_history: List[Message]
    max_answer_tokens: int
    chars_used: int
    budget_chars: int
    dropped: int = 0


def history_budget_chars(capacity: int, chars_per_token: float, history_fraction: float) -> int:
    return math.floor(capacity * history_fraction * chars_per_token)


def compute_budget(
    history: Sequence[Message],
    prompt_len: int,
    capacity: int,
    chars_per_token: float,
    history_fraction: float = DEFAULT_HISTORY_FRACTION,
    answer_margin: int = DEFAULT_ANSWER_MARGIN,
    min_answer: int = DEFAULT_MIN_ANSWER,
) -> BudgetResult:
    if capacity <= 0:
        raise ValidationError(code="INVALID_CAPACITY", message=f"capacity must be > 0, got {capacity}")
    if chars_per_token <= 0:
        raise ValidationError(code="INVALID_RATIO", message=f"chars_per_token must be > 0, got {chars_per_token}")
    if not 0 < history_fraction <= 1:
        raise ValidationError(code="INVALID_FRACTION", message=f"history_fraction out of range: {history_fraction}")

    budget_chars = history_budget_chars(capacity, chars_per_token, history_fraction)

    kept: List[Message] = []
    chars_used = 0
    for msg in reversed(history):
        size = len(msg.content)
        if chars_used + size > budget_chars:
            break
        chars_used += size
        kept.append(msg)
    kept.reverse()

    used_tokens = math.ceil((chars_used + max(prompt_len, 0)) / chars_per_token)
    max_answer = max(min_answer, capacity - used_tokens - answer_margin)
    return BudgetResult(
        trimmed_history=kept,
        max_answer_tokens=max_answer,
        chars_used=chars_used,
        budget_chars=budget_chars,
        dropped=len(history) - len(kept),
    )
