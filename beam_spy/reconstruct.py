"""
beam_spy.reconstruct
====================

Best-effort pseudo-source from debug info, for modules whose original
source file is not available.

Two backends are understood:

``erl_abstract_code``
    Erlang abstract forms (also found in the legacy ``Abst`` chunk).
    Function heads are printed as ``name/arity: name(Args) ->`` and body
    expressions at the line recorded in their annotation.
``elixir_erl``
    Elixir definitions (quoted expressions).  Each clause becomes
    ``def name(args), do: body`` or a multi-line ``do`` block.

The output is a ``{line_number: text}`` map; it is readable and line
addressable but not the literal original text.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional, Sequence

from beam_spy.errors import SourceUnavailableError
from beam_spy.etf import (
    Atom,
    ImproperList,
    inspect_atom,
    inspect_term,
    module_display_name,
    proplist_get,
)

_log = logging.getLogger(__name__)

_MAX_EXPR = 200


def _clip(text: str) -> str:
    if len(text) > _MAX_EXPR:
        return text[:_MAX_EXPR] + "..."
    return text


def _safe(printer: Callable[[Any], str], node: Any) -> str:
    try:
        return _clip(printer(node))
    except RecursionError:
        return _clip(inspect_term(node, limit=50))


# ===========================================================================
# Erlang abstract forms
# ===========================================================================

def anno_line(anno: Any) -> Optional[int]:
    """Line number from an erl_anno value."""
    if isinstance(anno, bool):
        return None
    if isinstance(anno, int):
        return anno if anno > 0 else None
    if isinstance(anno, tuple) and anno and isinstance(anno[0], int):
        return anno[0] if anno[0] > 0 else None
    if isinstance(anno, list):
        return anno_line(proplist_get(anno, "location"))
    return None


_ERL_OPS = {
    "andalso", "orelse", "and", "or", "xor", "band", "bor", "bxor",
    "bsl", "bsr", "div", "rem", "not", "bnot",
}


def erl_expr(node: Any) -> str:
    """Render one Erlang abstract expression."""
    if not isinstance(node, tuple) or not node:
        return inspect_term(node, limit=20)
    kind = node[0]
    if kind == "var":
        return str(node[2])
    if kind == "atom":
        return _erl_atom(node[2])
    if kind in ("integer", "float"):
        return str(node[2])
    if kind == "char":
        return "$" + chr(node[2])
    if kind == "string":
        value = node[2]
        if isinstance(value, list):
            value = "".join(chr(c) for c in value if isinstance(c, int))
        return '"' + str(value).replace('"', '\\"') + '"'
    if kind == "nil":
        return "[]"
    if kind == "cons":
        return _erl_list(node)
    if kind == "tuple":
        return "{" + ", ".join(erl_expr(e) for e in node[2]) + "}"
    if kind == "match":
        return f"{erl_expr(node[2])} = {erl_expr(node[3])}"
    if kind == "op" and len(node) == 5:
        return f"{erl_expr(node[3])} {node[2]} {erl_expr(node[4])}"
    if kind == "op" and len(node) == 4:
        sep = " " if node[2] in _ERL_OPS else ""
        return f"{node[2]}{sep}{erl_expr(node[3])}"
    if kind == "call":
        return f"{_erl_callee(node[2])}({', '.join(erl_expr(a) for a in node[3])})"
    if kind == "remote":
        return f"{erl_expr(node[2])}:{erl_expr(node[3])}"
    if kind == "fun":
        return _erl_fun(node[2])
    if kind == "named_fun":
        return f"fun {node[2]}(...) -> ... end"
    if kind == "bin":
        return "<<" + ", ".join(_erl_bin_element(e) for e in node[2]) + ">>"
    if kind == "map":
        return _erl_map(node)
    if kind == "record":
        return f"#{node[-2]}{{...}}"
    if kind == "case":
        return f"case {erl_expr(node[2])} of ... end"
    if kind == "if":
        return "if ... end"
    if kind == "receive":
        return "receive ... end"
    if kind == "try":
        return "try ... end"
    if kind == "catch":
        return f"catch {erl_expr(node[2])}"
    if kind == "block":
        return "begin " + ", ".join(erl_expr(e) for e in node[2]) + " end"
    if kind in ("lc", "bc", "mc"):
        return f"[{erl_expr(node[2])} || ...]"
    return inspect_term(node, limit=20)


def _erl_atom(name: Any) -> str:
    text = str(name)
    if text and text[0].islower() and text.replace("_", "").replace("@", "").isalnum():
        return text
    return "'" + text.replace("'", "\\'") + "'"


def _erl_callee(node: Any) -> str:
    if isinstance(node, tuple) and node and node[0] == "atom":
        return _erl_atom(node[2])
    return erl_expr(node)


def _erl_list(node: tuple) -> str:
    items: List[str] = []
    while isinstance(node, tuple) and node and node[0] == "cons":
        items.append(erl_expr(node[2]))
        node = node[3]
    if isinstance(node, tuple) and node and node[0] == "nil":
        return "[" + ", ".join(items) + "]"
    return "[" + ", ".join(items) + " | " + erl_expr(node) + "]"


def _erl_fun(spec: Any) -> str:
    if isinstance(spec, tuple) and spec:
        if spec[0] == "function" and len(spec) == 3:
            return f"fun {spec[1]}/{spec[2]}"
        if spec[0] == "function" and len(spec) == 4:
            return f"fun {erl_expr(spec[1])}:{erl_expr(spec[2])}/{erl_expr(spec[3])}"
    return "fun(...) -> ... end"


def _erl_bin_element(element: Any) -> str:
    if isinstance(element, tuple) and len(element) >= 3 and element[0] == "bin_element":
        return erl_expr(element[2])
    return erl_expr(element)


def _erl_map(node: tuple) -> str:
    fields = node[-1]
    parts = []
    for field in fields if isinstance(fields, list) else []:
        if isinstance(field, tuple) and len(field) == 4:
            op = "=>" if field[0] == "map_field_assoc" else ":="
            parts.append(f"{erl_expr(field[2])} {op} {erl_expr(field[3])}")
    prefix = erl_expr(node[2]) if len(node) == 4 else ""
    return prefix + "#{" + ", ".join(parts) + "}"


def _erl_clause_head(name: str, clause: tuple) -> str:
    args = ", ".join(_safe(erl_expr, a) for a in clause[2])
    head = f"{_erl_atom(name)}({args})"
    guards = clause[3]
    if guards:
        alternatives = "; ".join(
            ", ".join(_safe(erl_expr, g) for g in group) for group in guards
        )
        head += f" when {alternatives}"
    return head


def _erl_function(form: tuple, lines: Dict[int, str]) -> None:
    _, anno, name, arity, clauses = form
    func_line = anno_line(anno)
    for position, clause in enumerate(clauses):
        if not (isinstance(clause, tuple) and len(clause) == 5 and clause[0] == "clause"):
            continue
        head = _erl_clause_head(name, clause) + " ->"
        clause_line = anno_line(clause[1]) or func_line
        if position == 0 and func_line is not None:
            lines[func_line] = f"{name}/{arity}: {head}"
            if clause_line == func_line:
                clause_line = None
        if clause_line is not None:
            lines.setdefault(clause_line, head)
        for expr in clause[4]:
            line = anno_line(expr[1]) if isinstance(expr, tuple) and len(expr) > 1 else None
            if line is not None:
                lines.setdefault(line, "    " + _safe(erl_expr, expr))


def reconstruct_erlang_forms(forms: Sequence[Any]) -> Dict[int, str]:
    lines: Dict[int, str] = {}
    for form in forms:
        if not isinstance(form, tuple) or len(form) < 2:
            continue
        kind = form[0]
        if kind == "function" and len(form) == 5:
            _erl_function(form, lines)
        elif kind == "attribute" and len(form) == 4:
            line = anno_line(form[1])
            if line is None:
                continue
            if form[2] == "module":
                lines[line] = f"-module({form[3]})."
            elif form[2] == "export" and isinstance(form[3], list):
                exports = ", ".join(
                    f"{n}/{a}" for n, a in (e for e in form[3] if isinstance(e, tuple))
                )
                lines[line] = f"-export([{exports}])."
    return lines


# ===========================================================================
# Elixir quoted expressions
# ===========================================================================

_EX_BINARY_OPS = frozenset({
    "+", "-", "*", "/", "==", "!=", "===", "!==", "<", ">", "<=", ">=",
    "&&", "||", "and", "or", "<>", "++", "--", "..", "|>", "=", "in",
    "=~", "::", "<-", "\\\\", "when", "|",
})
_EX_UNARY_OPS = frozenset({"-", "+", "!", "not", "^", "&"})


def _meta_line(meta: Any) -> Optional[int]:
    line = proplist_get(meta, "line")
    return line if isinstance(line, int) and not isinstance(line, bool) else None


def _is_call(node: Any) -> bool:
    return isinstance(node, tuple) and len(node) == 3 and isinstance(node[1], list)


def ex_expr(node: Any) -> str:
    """Render an Elixir quoted expression."""
    if isinstance(node, Atom):
        return inspect_atom(node)
    if isinstance(node, bool):
        return "true" if node else "false"
    if isinstance(node, (int, float)):
        return str(node)
    if isinstance(node, (bytes, bytearray, str)):
        return inspect_term(node)
    if isinstance(node, list):
        return _ex_list(node)
    if isinstance(node, ImproperList):
        return inspect_term(node, limit=20)
    if isinstance(node, tuple) and len(node) == 2:
        return "{" + ex_expr(node[0]) + ", " + ex_expr(node[1]) + "}"
    if _is_call(node):
        return _ex_call(*node)
    return inspect_term(node, limit=20)


def _ex_list(items: list) -> str:
    if items and all(isinstance(i, tuple) and len(i) == 2 and isinstance(i[0], Atom)
                     for i in items):
        return "[" + ", ".join(f"{k}: {ex_expr(v)}" for k, v in items) + "]"
    if items and _is_call(items[-1]) and items[-1][0] == "|":
        head = [ex_expr(i) for i in items[:-1]]
        left, right = items[-1][2]
        head.append(f"{ex_expr(left)} | {ex_expr(right)}")
        return "[" + ", ".join(head) + "]"
    return "[" + ", ".join(ex_expr(i) for i in items) + "]"


def _ex_args(args: Sequence[Any]) -> str:
    return ", ".join(ex_expr(a) for a in args)


def _ex_do_block(name: str, args: list) -> str:
    head_args = args[:-1]
    head = f"{name} {_ex_args(head_args)}".rstrip()
    return f"{head} do ... end"


def _ex_call(form: Any, meta: list, args: Any) -> str:
    if isinstance(form, Atom) and isinstance(args, Atom):
        return str(form)  # variable
    if not isinstance(args, list):
        args = []
    if form == "__aliases__":
        return ".".join(str(p) for p in args)
    if form == "__block__":
        return "; ".join(ex_expr(a) for a in args)
    if form == "{}":
        return "{" + _ex_args(args) + "}"
    if form == "%{}":
        pairs = []
        for pair in args:
            if isinstance(pair, tuple) and len(pair) == 2:
                key, value = pair
                if isinstance(key, Atom):
                    pairs.append(f"{key}: {ex_expr(value)}")
                else:
                    pairs.append(f"{ex_expr(key)} => {ex_expr(value)}")
        return "%{" + ", ".join(pairs) + "}"
    if form == "%" and len(args) == 2:
        inner = ex_expr(args[1])
        return "%" + ex_expr(args[0]) + (inner[1:] if inner.startswith("%") else inner)
    if form == "<<>>":
        return "<<" + _ex_args(args) + ">>"
    if form == "fn":
        return "fn ... end"
    if form in ("case", "cond", "if", "unless", "with", "try", "receive", "for"):
        if args and isinstance(args[-1], list):
            return _ex_do_block(str(form), args)
    if isinstance(form, Atom) and len(args) == 2 and form in _EX_BINARY_OPS:
        return f"{ex_expr(args[0])} {form} {ex_expr(args[1])}"
    if isinstance(form, Atom) and len(args) == 1 and form in _EX_UNARY_OPS:
        sep = " " if form == "not" else ""
        return f"{form}{sep}{ex_expr(args[0])}"
    if _is_call(form) and form[0] == "." and isinstance(form[2], list) and len(form[2]) == 2:
        target, fun = form[2]
        left = ex_expr(target) if not isinstance(target, Atom) else inspect_atom(target)
        if proplist_get(meta, "no_parens") and not args:
            return f"{left}.{fun}"
        return f"{left}.{fun}({_ex_args(args)})"
    if _is_call(form) and form[0] == "." and isinstance(form[2], list) and len(form[2]) == 1:
        return f"{ex_expr(form[2][0])}.({_ex_args(args)})"
    if isinstance(form, Atom):
        return f"{form}({_ex_args(args)})"
    return f"{ex_expr(form)}({_ex_args(args)})"


def _ex_head(kind: str, name: str, args: Sequence[Any], guards: Sequence[Any]) -> str:
    head = f"{kind} {name}({', '.join(_safe(ex_expr, a) for a in args)})"
    if guards:
        head += " when " + " and ".join(_safe(ex_expr, g) for g in guards)
    return head


def _body_exprs(body: Any) -> List[Any]:
    if _is_call(body) and body[0] == "__block__":
        return list(body[2])
    return [body]


def reconstruct_elixir(debug_map: Dict[Any, Any]) -> Dict[int, str]:
    definitions = debug_map.get(Atom("definitions"))
    if not isinstance(definitions, list):
        raise SourceUnavailableError("Elixir debug info has no definitions")
    lines: Dict[int, str] = {}
    for definition in definitions:
        if not (isinstance(definition, tuple) and len(definition) == 4
                and isinstance(definition[0], tuple) and len(definition[0]) == 2):
            continue
        (name, _arity), kind, _meta, clauses = definition
        kind = str(kind) if kind in ("def", "defp", "defmacro", "defmacrop") else "def"
        for clause in clauses if isinstance(clauses, list) else []:
            if not (isinstance(clause, tuple) and len(clause) == 4):
                continue
            meta, args, guards, body = clause
            line = _meta_line(meta)
            if line is None:
                continue
            head = _ex_head(kind, str(name), args or [], guards or [])
            exprs = _body_exprs(body)
            expr_lines = [_meta_line(e[1]) if _is_call(e) else None for e in exprs]
            if all(el is None or el == line for el in expr_lines):
                lines[line] = f"{head}, do: {_safe(ex_expr, body)}"
                continue
            lines[line] = f"{head} do"
            for expr, expr_line in zip(exprs, expr_lines):
                if expr_line is not None:
                    lines.setdefault(expr_line, "  " + _safe(ex_expr, expr))
    module = debug_map.get(Atom("module"))
    if isinstance(module, Atom):
        lines.setdefault(1, f"defmodule {module_display_name(module)} do")
    return lines


# ===========================================================================
# Entry point
# ===========================================================================

def reconstruct_source(debug_info: Any) -> Dict[int, str]:
    """Pseudo-source lines from a decoded ``Dbgi`` (or ``Abst``) term.

    Raises :class:`SourceUnavailableError` when the term carries no
    usable code.
    """
    if isinstance(debug_info, tuple) and len(debug_info) == 2 \
            and debug_info[0] == "raw_abstract_v1":
        return reconstruct_erlang_forms(debug_info[1])

    if not (isinstance(debug_info, tuple) and len(debug_info) == 3
            and debug_info[0] == "debug_info_v1"):
        raise SourceUnavailableError("unrecognised debug info format")

    _, backend, data = debug_info
    if data == "none":
        raise SourceUnavailableError("module was compiled without debug info")

    if backend == "elixir_erl":
        if isinstance(data, tuple) and len(data) >= 2 and data[0] == "elixir_v1" \
                and isinstance(data[1], dict):
            return reconstruct_elixir(data[1])
        raise SourceUnavailableError("unrecognised Elixir debug info")

    if backend == "erl_abstract_code":
        if isinstance(data, tuple) and len(data) == 2:
            forms = data[0]
            if isinstance(forms, tuple) and len(forms) == 2 and forms[0] == "raw_abstract_v1":
                forms = forms[1]
            if isinstance(forms, list):
                return reconstruct_erlang_forms(forms)
        raise SourceUnavailableError("unrecognised abstract code")

    _log.debug("no reconstruction for debug info backend %r", backend)
    raise SourceUnavailableError(f"unsupported debug info backend {backend}")
