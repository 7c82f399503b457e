from __future__ import annotations

import uuid
from typing import Any, Iterable, List, Optional, Protocol, Sequence, Union

from ..contracts.v1.message import PromptChoice, PromptKind, PromptOptions, PromptRequest
from ..util.conv import coerce_bool
from .arbitration import PromptAnswer

ChoiceLike = Union[PromptChoice, str, tuple]


def _choices(items: Iterable[ChoiceLike]) -> List[PromptChoice]:
    out: List[PromptChoice] = []
    for it in items:
        if isinstance(it, PromptChoice):
            out.append(it)
        elif isinstance(it, tuple) and it:
            out.append(PromptChoice(name=str(it[0]), value=it[1] if len(it) > 1 else it[0]))
        else:
            out.append(PromptChoice(name=str(it), value=it))
    return out


def build_prompt_request(
    kind: PromptKind,
    message: str,
    *,
    default: Any = None,
    choices: Sequence[ChoiceLike] = (),
    page_size: Optional[int] = None,
    validation_hint: str = "",
    timeout_ms: Optional[int] = None,
) -> PromptRequest:
    return PromptRequest(
        id=uuid.uuid4().hex,
        kind=kind,
        options=PromptOptions(
            message=message,
            default=default,
            choices=_choices(choices),
            page_size=page_size,
            validation_hint=validation_hint,
        ),
        timeout_ms=timeout_ms,
    )


class PromptAsker(Protocol):
    async def ask(self, request: PromptRequest) -> PromptAnswer: ...


# Each helper takes anything with `ask(request)`: a PromptArbiter, or a
# RunSession, which also refuses when no input source exists.


async def prompt_input(
    asker: PromptAsker, message: str, *, default: Optional[str] = None, timeout_ms: Optional[int] = None
) -> str:
    req = build_prompt_request("input", message, default=default or None, timeout_ms=timeout_ms)
    answer = await asker.ask(req)
    if answer.value is None or answer.value == "":
        return default or ""
    return str(answer.value)


async def prompt_confirm(
    asker: PromptAsker, message: str, *, default: Optional[bool] = None, timeout_ms: Optional[int] = None
) -> bool:
    req = build_prompt_request("confirm", message, default=default, timeout_ms=timeout_ms)
    answer = await asker.ask(req)
    if answer.value is None:
        return bool(default)
    return coerce_bool(answer.value, default=bool(default))


async def prompt_select(
    asker: PromptAsker,
    message: str,
    choices: Sequence[ChoiceLike],
    *,
    default: Any = None,
    timeout_ms: Optional[int] = None,
) -> Any:
    if not choices:
        raise ValueError("select prompt needs at least one choice")
    req = build_prompt_request("select", message, default=default, choices=choices, timeout_ms=timeout_ms)
    value = (await asker.ask(req)).value
    return default if value is None else value


async def prompt_checkbox(
    asker: PromptAsker,
    message: str,
    choices: Sequence[ChoiceLike],
    *,
    timeout_ms: Optional[int] = None,
) -> List[Any]:
    if not choices:
        raise ValueError("checkbox prompt needs at least one choice")
    req = build_prompt_request("checkbox", message, choices=choices, timeout_ms=timeout_ms)
    value = (await asker.ask(req)).value
    if value is None:
        return []
    return list(value) if isinstance(value, (list, tuple)) else [value]
