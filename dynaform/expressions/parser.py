"""
DYNAFORM Expression Parser

Recursive-descent parser producing a small immutable AST.

Precedence (lowest first):
    ||
    &&
    == != === !==
    < <= > >= contains startsWith endsWith matches
    + -
    * / %
    unary ! - +
    postfix .member [index] (call)
"""

from __future__ import annotations
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, List, Optional, Tuple, Union

from dynaform.core.paths import UNDEFINED
from dynaform.errors.exceptions import ExpressionError
from dynaform.expressions.lexer import Token, tokenize


# =============================================================================
# AST
# =============================================================================

@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Identifier:
    name: str


@dataclass(frozen=True)
class Member:
    obj: "Node"
    name: Union[str, int]


@dataclass(frozen=True)
class Index:
    obj: "Node"
    index: "Node"


@dataclass(frozen=True)
class Call:
    callee: "Node"
    args: Tuple["Node", ...]


@dataclass(frozen=True)
class Unary:
    op: str
    operand: "Node"


@dataclass(frozen=True)
class Binary:
    op: str
    left: "Node"
    right: "Node"


@dataclass(frozen=True)
class Logical:
    op: str
    left: "Node"
    right: "Node"


@dataclass(frozen=True)
class ArrayLiteral:
    items: Tuple["Node", ...]


Node = Union[Literal, Identifier, Member, Index, Call, Unary, Binary, Logical, ArrayLiteral]

KEYWORD_LITERALS = {
    'true': True,
    'false': False,
    'null': None,
    'undefined': UNDEFINED,
}

WORD_OPERATORS = ('contains', 'startsWith', 'endsWith', 'matches')


# =============================================================================
# CURSOR
# =============================================================================

class Cursor:
    def __init__(self, tokens: List[Token], source: str):
        self.toks = tokens
        self.i = 0
        self.source = source

    def peek(self) -> Token:
        return self.toks[self.i]

    def match(self, *types: str) -> Optional[Token]:
        t = self.toks[self.i]
        if t[0] in types:
            self.i += 1
            return t
        return None

    def match_word(self, *words: str) -> Optional[Token]:
        t = self.toks[self.i]
        if t[0] == 'ID' and t[1] in words:
            self.i += 1
            return t
        return None

    def expect(self, *types: str) -> Token:
        t = self.toks[self.i]
        if t[0] in types:
            self.i += 1
            return t
        want = '|'.join(types)
        got = 'end of expression' if t[0] == 'EOF' else repr(t[1])
        raise ExpressionError(f'Expected {want}, got {got}', position=t[2], expression=self.source)


# =============================================================================
# GRAMMAR
# =============================================================================

def _parse_or(cur: Cursor) -> Node:
    left = _parse_and(cur)
    while cur.match('OR'):
        left = Logical('||', left, _parse_and(cur))
    return left


def _parse_and(cur: Cursor) -> Node:
    left = _parse_equality(cur)
    while cur.match('AND'):
        left = Logical('&&', left, _parse_equality(cur))
    return left


def _parse_equality(cur: Cursor) -> Node:
    left = _parse_comparison(cur)
    while True:
        t = cur.match('EQ', 'NE', 'STRICT_EQ', 'STRICT_NE')
        if not t:
            return left
        left = Binary(t[1], left, _parse_comparison(cur))


def _parse_comparison(cur: Cursor) -> Node:
    left = _parse_additive(cur)
    while True:
        t = cur.match('LT', 'LE', 'GT', 'GE') or cur.match_word(*WORD_OPERATORS)
        if not t:
            return left
        left = Binary(t[1], left, _parse_additive(cur))


def _parse_additive(cur: Cursor) -> Node:
    left = _parse_multiplicative(cur)
    while True:
        t = cur.match('PLUS', 'MINUS')
        if not t:
            return left
        left = Binary(t[1], left, _parse_multiplicative(cur))


def _parse_multiplicative(cur: Cursor) -> Node:
    left = _parse_unary(cur)
    while True:
        t = cur.match('STAR', 'SLASH', 'PERCENT')
        if not t:
            return left
        left = Binary(t[1], left, _parse_unary(cur))


def _parse_unary(cur: Cursor) -> Node:
    t = cur.match('NOT', 'MINUS', 'PLUS')
    if t:
        return Unary(t[1], _parse_unary(cur))
    return _parse_postfix(cur)


def _parse_postfix(cur: Cursor) -> Node:
    node = _parse_primary(cur)
    while True:
        if cur.match('DOT'):
            t = cur.expect('ID', 'NUMBER')
            node = Member(node, int(t[1]) if t[0] == 'NUMBER' else t[1])
        elif cur.match('LBRACK'):
            index = _parse_or(cur)
            cur.expect('RBRACK')
            if isinstance(index, Literal) and isinstance(index.value, (int, float)) \
                    and not isinstance(index.value, bool) and float(index.value).is_integer():
                node = Member(node, int(index.value))
            elif isinstance(index, Literal) and isinstance(index.value, str):
                node = Member(node, index.value)
            else:
                node = Index(node, index)
        elif cur.match('LPAREN'):
            node = Call(node, _parse_args(cur, 'RPAREN'))
        else:
            return node


def _parse_args(cur: Cursor, closing: str) -> Tuple[Node, ...]:
    args = []
    if cur.match(closing):
        return tuple(args)
    while True:
        args.append(_parse_or(cur))
        if cur.match(closing):
            return tuple(args)
        cur.expect('COMMA')


def _parse_primary(cur: Cursor) -> Node:
    t = cur.peek()
    if cur.match('NUMBER'):
        text = t[1]
        value = float(text)
        return Literal(int(value) if value.is_integer() and not any(c in text for c in '.eE') else value)
    if cur.match('STRING'):
        return Literal(t[1])
    if cur.match('LPAREN'):
        node = _parse_or(cur)
        cur.expect('RPAREN')
        return node
    if cur.match('LBRACK'):
        return ArrayLiteral(_parse_args(cur, 'RBRACK'))
    if cur.match('ID'):
        if t[1] in KEYWORD_LITERALS:
            return Literal(KEYWORD_LITERALS[t[1]])
        return Identifier(t[1])
    got = 'end of expression' if t[0] == 'EOF' else repr(t[1])
    raise ExpressionError(f'Unexpected {got}', position=t[2], expression=cur.source)


@lru_cache(maxsize=1024)
def parse_expression(source: str) -> Node:
    """
    Parse an expression string.

    Results are cached; the AST is immutable.

    Raises:
        ExpressionError: on any syntax error
    """
    if not isinstance(source, str) or not source.strip():
        raise ExpressionError('Empty expression', position=0, expression=str(source))
    cur = Cursor(tokenize(source), source)
    node = _parse_or(cur)
    t = cur.peek()
    if t[0] != 'EOF':
        raise ExpressionError(f'Unexpected {t[1]!r}', position=t[2], expression=source)
    return node
