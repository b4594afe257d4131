"""Разбор URI-шаблонов (подмножество RFC 6570) для чтения ресурсов по шаблону.

Поддерживаются выражения `{var}`, `{+var}`, `{/var}` и `{?a,b}`. Шаблон умеет
как сопоставлять конкретный URI с извлечением переменных, так и заполняться
значениями обратно. Остальные операторы и модификаторы RFC 6570 (`{#var}`,
`{.var}`, `{var*}`, `{var:3}` и т.п.), а также повторные имена переменных
отклоняются с ValueError при компиляции.
"""

from __future__ import annotations

import re
from typing import Dict, List, Optional, Set, Tuple
from urllib.parse import parse_qsl, quote, unquote

_EXPRESSION = re.compile(r"\{([^{}]*)\}")
_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_SUPPORTED_OPERATORS = "+/?"
_UNSUPPORTED_OPERATORS = "#.;&=,!@|"

# Зарезервированные символы RFC 3986, которые `{+var}` не кодирует.
_RESERVED = ":/?#[]@!$&'()*+,;="


class UriTemplate:
    """Скомпилированный URI-шаблон."""

    def __init__(self, template: str) -> None:
        self.template = template
        self._parts: List[Tuple[str, str, List[str]]] = []
        self._query_names: List[str] = []
        seen: Set[str] = set()
        pattern, last = "", 0
        for match in _EXPRESSION.finditer(template):
            literal = template[last : match.start()]
            _check_literal(template, literal)
            pattern += re.escape(literal)
            self._parts.append(("literal", literal, []))
            operator, names = _parse_expression(template, match.group(1))
            for name in names:
                if name in seen:
                    raise ValueError(f"Duplicate variable {name!r} in URI template {template!r}")
                seen.add(name)
            if operator == "?":
                # Query-часть сопоставляется целиком и разбирается отдельно.
                if not self._query_names:
                    pattern += r"(?:\?(?P<__query>[^#]*))?"
                self._query_names.extend(names)
            elif operator == "+":
                pattern += f"(?P<{names[0]}>.*?)"
            elif operator == "/":
                pattern += f"(?:/(?P<{names[0]}>[^/?#]*))"
            else:
                pattern += f"(?P<{names[0]}>[^/?#]+)"
            self._parts.append((operator or "simple", "", names))
            last = match.end()
        tail = template[last:]
        _check_literal(template, tail)
        pattern += re.escape(tail)
        self._parts.append(("literal", tail, []))
        self._regex = re.compile(f"^{pattern}$")

    @property
    def variables(self) -> List[str]:
        names: List[str] = []
        for kind, _, part_names in self._parts:
            if kind != "literal":
                names.extend(part_names)
        return names

    def match(self, uri: str) -> Optional[Dict[str, str]]:
        """Возвращает переменные шаблона для URI или None, если URI не подходит."""
        found = self._regex.match(uri)
        if found is None:
            return None
        values: Dict[str, str] = {}
        for name, raw in found.groupdict().items():
            if name == "__query" or raw is None:
                continue
            values[name] = unquote(raw)
        query = found.groupdict().get("__query")
        if query:
            for key, value in parse_qsl(query, keep_blank_values=True):
                if key in self._query_names:
                    values[key] = value
        return values

    def expand(self, values: Dict[str, str]) -> str:
        """Подставляет значения в шаблон; отсутствующие переменные опускаются."""
        result: List[str] = []
        for kind, literal, names in self._parts:
            if kind == "literal":
                result.append(literal)
            elif kind == "?":
                pairs = [
                    f"{quote(name, safe='')}={quote(str(values[name]), safe='')}"
                    for name in names
                    if values.get(name) is not None
                ]
                if pairs:
                    result.append("?" + "&".join(pairs))
            elif values.get(names[0]) is None:
                continue
            elif kind == "+":
                result.append(quote(str(values[names[0]]), safe=_RESERVED))
            elif kind == "/":
                result.append("/" + quote(str(values[names[0]]), safe=""))
            else:
                result.append(quote(str(values[names[0]]), safe=""))
        return "".join(result)

    def __repr__(self) -> str:
        return f"UriTemplate({self.template!r})"


def _check_literal(template: str, literal: str) -> None:
    if "{" in literal or "}" in literal:
        raise ValueError(f"Unbalanced brace in URI template {template!r}")


def _parse_expression(template: str, body: str) -> Tuple[str, List[str]]:
    operator = ""
    if body and body[0] in _UNSUPPORTED_OPERATORS:
        raise ValueError(f"Unsupported operator {body[0]!r} in URI template {template!r}")
    if body and body[0] in _SUPPORTED_OPERATORS:
        operator, body = body[0], body[1:]
    names = body.split(",")
    for name in names:
        if name.endswith("*") or ":" in name:
            raise ValueError(f"Unsupported modifier in {{{body}}} of URI template {template!r}")
        if not _NAME.match(name):
            raise ValueError(f"Invalid variable name {name!r} in URI template {template!r}")
    if len(names) > 1 and operator != "?":
        raise ValueError(f"Variable lists are only supported in {{?...}} expressions: {template!r}")
    return operator, names


__all__ = ["UriTemplate"]
