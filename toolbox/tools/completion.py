"""Автодополнение значений аргументов промптов и шаблонов ресурсов."""

from __future__ import annotations

import inspect
from difflib import SequenceMatcher
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from toolbox.models.content import MAX_COMPLETION_VALUES, Completion
from toolbox.tools.registry import (
    ArgumentCompleter,
    EntityCompleter,
    PromptSpec,
    ResourceTemplateSpec,
)

# Нижняя граница похожести для нечёткого поиска по enum.
FUZZY_MIN_SCORE = 0.4


async def maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def _similarity(query: str, candidate: str) -> float:
    """Лучшее совпадение запроса со строкой целиком или с окном той же длины."""
    best = SequenceMatcher(None, query, candidate).ratio()
    width = len(query)
    for start in range(0, max(0, len(candidate) - width) + 1):
        window = candidate[start : start + width]
        score = SequenceMatcher(None, query, window).ratio()
        if score > best:
            best = score
        if best == 1.0:
            break
    return best


def fuzzy_rank(query: str, candidates: Iterable[str], *, min_score: float = FUZZY_MIN_SCORE) -> List[str]:
    """Ранжирует кандидатов по похожести на запрос (без учёта регистра).

    Пустой запрос ничего не находит; равные по оценке кандидаты сохраняют исходный порядок.
    """
    needle = query.strip().lower()
    if not needle:
        return []
    scored: List[Tuple[float, int, str]] = []
    for index, candidate in enumerate(candidates):
        score = _similarity(needle, candidate.lower())
        if score >= min_score:
            scored.append((-score, index, candidate))
    scored.sort()
    return [candidate for _, _, candidate in scored]


class CompletionResolver:
    """Разрешает пару (имя аргумента, частичное значение) в Completion."""

    def __init__(
        self,
        *,
        completers: Optional[Dict[str, ArgumentCompleter]] = None,
        enums: Optional[Dict[str, Sequence[str]]] = None,
        complete: Optional[EntityCompleter] = None,
    ) -> None:
        self._completers = dict(completers or {})
        self._enums = {name: list(values) for name, values in (enums or {}).items()}
        self._complete = complete

    @classmethod
    def for_prompt(cls, prompt: PromptSpec) -> "CompletionResolver":
        return cls(
            completers={arg.name: arg.complete for arg in prompt.arguments if arg.complete is not None},
            enums={arg.name: arg.enum for arg in prompt.arguments if arg.enum},
            complete=prompt.complete,
        )

    @classmethod
    def for_resource_template(cls, template: ResourceTemplateSpec) -> "CompletionResolver":
        return cls(
            completers={arg.name: arg.complete for arg in template.arguments if arg.complete is not None},
            complete=template.complete,
        )

    @property
    def supports_completion(self) -> bool:
        return self._complete is not None or bool(self._completers) or bool(self._enums)

    async def resolve(self, argument_name: str, value: str) -> Completion:
        # Порядок: completer аргумента, enum аргумента, completer сущности.
        # Результат пользовательского completer не усекается: больше 100 значений
        # считается нарушением контракта и падает на валидации модели.
        completer = self._completers.get(argument_name)
        if completer is not None:
            return _as_completion(await maybe_await(completer(value)))

        enum_values = self._enums.get(argument_name)
        if enum_values:
            matches = fuzzy_rank(value, enum_values)
            completion = Completion(values=matches[:MAX_COMPLETION_VALUES], total=len(matches))
            if len(matches) > MAX_COMPLETION_VALUES:
                completion.hasMore = True
            return completion

        if self._complete is not None:
            return _as_completion(await maybe_await(self._complete(argument_name, value)))

        return Completion(values=[])


def _as_completion(value: Any) -> Completion:
    if isinstance(value, Completion):
        return Completion.model_validate(value.model_dump())
    return Completion.model_validate(value)


__all__ = [
    "CompletionResolver",
    "FUZZY_MIN_SCORE",
    "fuzzy_rank",
    "maybe_await",
]
