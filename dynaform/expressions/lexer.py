"""
DYNAFORM Expression Lexer

Tokenizes the restricted expression language used by derivations and
conditions. Tokens are ``(type, value, position)`` tuples.
"""

import re
from typing import List, Tuple

from dynaform.errors.exceptions import ExpressionError

Token = Tuple[str, str, int]  # (type, value, position)

# Longest operators first
OPERATORS = [
    ('===', 'STRICT_EQ'),
    ('!==', 'STRICT_NE'),
    ('==', 'EQ'),
    ('!=', 'NE'),
    ('<=', 'LE'),
    ('>=', 'GE'),
    ('&&', 'AND'),
    ('||', 'OR'),
    ('<', 'LT'),
    ('>', 'GT'),
    ('+', 'PLUS'),
    ('-', 'MINUS'),
    ('*', 'STAR'),
    ('/', 'SLASH'),
    ('%', 'PERCENT'),
    ('!', 'NOT'),
    ('(', 'LPAREN'),
    (')', 'RPAREN'),
    ('[', 'LBRACK'),
    (']', 'RBRACK'),
    (',', 'COMMA'),
    ('.', 'DOT'),
]

WS = ' \t\r\n'

_id_re = re.compile(r'[A-Za-z_$][A-Za-z0-9_$]*')
_num_re = re.compile(r'(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?')
_int_re = re.compile(r'\d+')

_ESCAPES = {'n': '\n', 't': '\t', 'r': '\r', '\\': '\\', "'": "'", '"': '"'}


def _read_string(s: str, i: int) -> Tuple[str, int]:
    quote = s[i]
    out = []
    j = i + 1
    while j < len(s):
        ch = s[j]
        if ch == '\\' and j + 1 < len(s):
            out.append(_ESCAPES.get(s[j + 1], s[j + 1]))
            j += 2
            continue
        if ch == quote:
            return ''.join(out), j + 1
        out.append(ch)
        j += 1
    raise ExpressionError('Unterminated string literal', position=i, expression=s)


def tokenize(s: str) -> List[Token]:
    """
    Split an expression into tokens.

    Raises:
        ExpressionError: on an unexpected character or unterminated string
    """
    tokens: List[Token] = []
    i = 0
    n = len(s)
    while i < n:
        ch = s[i]
        if ch in WS:
            i += 1
            continue
        if ch in '"\'':
            val, end = _read_string(s, i)
            tokens.append(('STRING', val, i))
            i = end
            continue
        # Index segments after a dot stay integers: items.0.qty
        if ch.isdigit() and tokens and tokens[-1][0] == 'DOT':
            m = _int_re.match(s, i)
            tokens.append(('NUMBER', m.group(0), i))
            i = m.end()
            continue
        # ".5" is a number, "a.b" is member access
        if ch.isdigit() or (ch == '.' and i + 1 < n and s[i + 1].isdigit()
                            and not (tokens and tokens[-1][0] in ('ID', 'RPAREN', 'RBRACK'))):
            m = _num_re.match(s, i)
            tokens.append(('NUMBER', m.group(0), i))
            i = m.end()
            continue
        m = _id_re.match(s, i)
        if m:
            tokens.append(('ID', m.group(0), i))
            i = m.end()
            continue
        for text, kind in OPERATORS:
            if s.startswith(text, i):
                tokens.append((kind, text, i))
                i += len(text)
                break
        else:
            raise ExpressionError(f'Unexpected character {ch!r}', position=i, expression=s)
    tokens.append(('EOF', '', n))
    return tokens
