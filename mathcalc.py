"""
Expression engine: tokenizer, shunting-yard converter and RPN evaluator.

    calculate('2x^2 + 1', x=3)              -> 19.0
    calculate_range('sin(x)', -10, 10, 500) -> (xs, ys)

The grammar is: decimal numbers with optional scientific notation, the
variable x, the functions sin cos tan asin acos atan sqrt ln log, the
operators + - * / ^ mod, parentheses, and implicit multiplication
between adjacent atoms (2x, 2(3), (1)(2), xcos(x)).
"""
import logging
import math
from enum import Enum

import numpy as np

logger = logging.getLogger(__name__)

DIGITS = '0123456789'
OPERATOR_CHARS = '+-*/^'
FUNCTION_NAMES = ('sin', 'cos', 'tan', 'asin', 'acos', 'atan', 'sqrt', 'ln', 'log')
KEYWORDS = frozenset(FUNCTION_NAMES + ('x', 'mod'))

UNARY_PRIORITY = 4
BINARY_PRIORITIES = {
    '+': 1,
    '-': 1,
    '*': 2,
    '/': 2,
    '^': 3,
    'mod': 3,
}


###############
## Tokenizer ##
###############

class Tokenizer():
    """Handles initial processing of the input string."""

    def __init__(self, line: str):
        self.line = line
        self.index = 0
        self.tokens: list[Token] = []

    def make_tokens(self) -> 'list[Token]':
        """
        Converts a string into a list of tokens by iteratively going over each
        character. Unary signs and implicit multiplication are resolved here,
        so the converter only ever sees explicit operators. Exceptions will be
        raised on the first character that cannot be scanned.
        """
        self.tokens = []

        while self.curr_char is not None:
            c = self.curr_char  # short variable name

            if c.isspace():
                self._skip_whitespace()
                continue
            if c in DIGITS or c == '.':
                self._make_number()
                continue
            if _is_letter(c):
                self._make_word()
                continue
            if c == '(':
                if self._last_is(TokenType.NUMBER, TokenType.VARIABLE, TokenType.CLOSE_BRACKET):
                    self._insert_mul(self.index)
                self._add(TokenType.OPEN_BRACKET, c, self.index)
                self._advance()
                continue
            if c == ')':
                self._add(TokenType.CLOSE_BRACKET, c, self.index)
                self._advance()
                continue
            if c in OPERATOR_CHARS:
                self._make_operator()
                continue

            # unrecognized character
            raise InvalidCharacter(f"Invalid character '{c}'", self.line, self.index)

        return self.tokens

    def _make_number(self):
        """
        Consumes the longest run of digits, periods and an exponent marker
        (with its optional sign), then validates the run as a whole.
        """
        start = self.index
        if self._last_is(TokenType.CLOSE_BRACKET, TokenType.VARIABLE):
            self._insert_mul(start)

        while self.curr_char is not None and (self.curr_char in DIGITS or self.curr_char in '.eE'):
            if self.curr_char in 'eE':
                self._advance()
                if self.curr_char is not None and self.curr_char in '+-':
                    self._advance()
                continue
            self._advance()

        text = self.line[start:self.index]
        if not is_valid_number(text):
            raise InvalidNumber(f'Invalid number "{text}"', self.line, start, len(text))
        self._add(TokenType.NUMBER, text, start)

    def _make_word(self):
        """
        Advances and makes a keyword. The word stops early once it reads "x"
        or "mod", so "xcos" is the variable followed by a function.
        """
        start = self.index
        text = ''
        while _is_letter(self.curr_char) and text not in ('x', 'mod'):
            text += self.curr_char
            self._advance()

        if text not in KEYWORDS:
            raise InvalidToken(f'Invalid token "{text}"', self.line, start, len(text))

        if text == 'x':
            if self._last_is(TokenType.VARIABLE):
                raise MissingOperator('Missing operator between "x" and "x"', self.line, start)
            if self._last_is(TokenType.NUMBER, TokenType.CLOSE_BRACKET):
                self._insert_mul(start)
            self._add(TokenType.VARIABLE, text, start)
        elif text == 'mod':
            self._add(TokenType.BINARY_OPERATOR, text, start, BINARY_PRIORITIES[text])
        else:
            if self._last_is(TokenType.NUMBER, TokenType.VARIABLE, TokenType.CLOSE_BRACKET):
                self._insert_mul(start)
            self._add(TokenType.FUNCTION, text, start)

    def _make_operator(self):
        """
        A sign is unary at the start of the line, right after "(" or right
        after a binary operator. Everything else is binary.
        """
        c = self.curr_char
        is_unary = (c in '+-' and (not self.tokens or
                    self._last_is(TokenType.OPEN_BRACKET, TokenType.BINARY_OPERATOR)))
        if is_unary:
            self._add(TokenType.UNARY_OPERATOR, c, self.index, UNARY_PRIORITY)
        else:
            self._add(TokenType.BINARY_OPERATOR, c, self.index, BINARY_PRIORITIES[c])
        self._advance()

    def _skip_whitespace(self):
        """
        Keeps advancing until the current character is no longer a space.
        Spaces may not be the only thing between two operands ("5 7").
        """
        start = self.index
        while self.curr_char is not None and self.curr_char.isspace():
            self._advance()

        before = self.line[start - 1] if start > 0 else None
        if _is_operand_char(before) and _is_operand_char(self.curr_char):
            raise MissingOperator('Missing operator', self.line, start, self.index - start)

    def _insert_mul(self, index: int):
        self._add(TokenType.BINARY_OPERATOR, '*', index, BINARY_PRIORITIES['*'])

    def _add(self, tok_type: 'TokenType', text: str, index: int, priority: int = 0):
        self.tokens.append(Token(tok_type, text, priority, index, self.line))

    def _last_is(self, *tok_types: 'TokenType') -> bool:
        return bool(self.tokens) and self.tokens[-1].type in tok_types

    def _advance(self):
        """
        Increments the index by 1 if able.
        """
        self.index += int(self.index < len(self.line))

    @property
    def curr_char(self) -> str | None:
        """
        Retrieves the current character, or None.
        """
        return self.line[self.index] if self.index < len(self.line) else None


def _is_letter(c: str | None) -> bool:
    return c is not None and c.isascii() and c.isalpha()


def _is_operand_char(c: str | None) -> bool:
    return c is not None and (c in DIGITS or c in '.x')


def is_valid_number(text: str) -> bool:
    """
    Checks a scanned numeric literal: one period at most and never after the
    exponent, one exponent marker that is neither first nor last, and a sign
    only after the marker. The literal must also convert to a finite float.
    """
    has_period = has_exp = has_sign = False
    for c in text:
        if c in DIGITS:
            continue
        if c == '.' and not has_period and not has_exp:
            has_period = True
        elif c in 'eE' and not has_exp:
            has_exp = True
        elif c in '+-' and has_exp and not has_sign:
            has_sign = True
        else:
            return False

    if has_exp and (text[0] in 'eE' or text[-1] in 'eE'):
        return False
    if text == '.' or text[:2].lower() == '.e':
        return False

    try:
        value = float(text)
    except ValueError:
        return False
    return math.isfinite(value)


def parse_expression(expression: str) -> 'list[Token]':
    tokens = Tokenizer(expression).make_tokens()
    logger.debug('tokens for %r: %s', expression, tokens)
    return tokens


############
## Tokens ##
############

class TokenType(Enum):
    NUMBER = 'Number'
    VARIABLE = 'Variable'
    OPEN_BRACKET = '('
    CLOSE_BRACKET = ')'
    UNARY_OPERATOR = 'Unary'
    BINARY_OPERATOR = 'Binary'
    FUNCTION = 'Function'


class Token():
    """
    One lexical unit. Tokens are read-only once built; the source line and
    index are kept so later stages can point at the offending text.
    """

    def __init__(self, tok_type: TokenType, text: str, priority: int = 0,
                 index: int = 0, source: str = ''):
        self._type = tok_type
        self._text = text
        self._priority = priority
        self._index = index
        self._source = source

    @property
    def type(self) -> TokenType:
        return self._type

    @property
    def text(self) -> str:
        return self._text

    @property
    def priority(self) -> int:
        return self._priority

    @property
    def index(self) -> int:
        return self._index

    @property
    def source(self) -> str:
        return self._source

    @property
    def length(self) -> int:
        return len(self._text)

    @property
    def value(self) -> float:
        return float(self._text)

    @property
    def is_operator(self) -> bool:
        return self._type in (TokenType.UNARY_OPERATOR, TokenType.BINARY_OPERATOR)

    @property
    def is_right_associative(self) -> bool:
        return self._type is TokenType.BINARY_OPERATOR and self._text == '^'

    def throw(self, error_type: 'type[CalcError]', message: str, **kwargs):
        raise error_type(message, self._source, self._index, self.length, **kwargs)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Token):
            return NotImplemented
        return (self._type, self._text, self._priority) == (other._type, other._text, other._priority)

    def __hash__(self) -> int:
        return hash((self._type, self._text, self._priority))

    def __str__(self) -> str:
        return f'Token({self._type}, {self._text})'

    def __repr__(self) -> str:
        return self.__str__()


###################
## Shunting-yard ##
###################

def convert_to_rpn(tokens: 'list[Token]') -> 'tuple[Token, ...]':
    """
    Reorders infix tokens into Reverse Polish Notation.

    Operators wait on a stack until something of lower priority arrives.
    Equal priorities pop too, except under "^", which is right-associative.
    A function sitting under a matched "(" is emitted right after the
    bracketed argument.
    """
    rpn: list[Token] = []
    operators: list[Token] = []

    for token in tokens:
        match token.type:
            case TokenType.NUMBER | TokenType.VARIABLE:
                rpn.append(token)
            case TokenType.FUNCTION | TokenType.OPEN_BRACKET:
                operators.append(token)
            case TokenType.CLOSE_BRACKET:
                while operators and operators[-1].type is not TokenType.OPEN_BRACKET:
                    rpn.append(operators.pop())
                if not operators:
                    token.throw(UnmatchedBracket, 'Unmatched ")"')
                operators.pop()
                if operators and operators[-1].type is TokenType.FUNCTION:
                    rpn.append(operators.pop())
            case TokenType.UNARY_OPERATOR | TokenType.BINARY_OPERATOR:
                while operators and _pops_before(operators[-1], token):
                    rpn.append(operators.pop())
                operators.append(token)

    while operators:
        top = operators.pop()
        if top.type in (TokenType.OPEN_BRACKET, TokenType.CLOSE_BRACKET):
            top.throw(UnmatchedBracket, f'Unmatched "{top.text}"')
        rpn.append(top)

    logger.debug('rpn: %s', ' '.join(t.text for t in rpn))
    return tuple(rpn)


def _pops_before(top: Token, incoming: Token) -> bool:
    if not top.is_operator:
        return False
    if top.priority > incoming.priority:
        return True
    return top.priority == incoming.priority and not top.is_right_associative


###############
## Evaluator ##
###############

BINARY_OPERATIONS = {
    '+': np.add,
    '-': np.subtract,
    '*': np.multiply,
    '/': np.divide,
    '^': np.power,
    'mod': np.fmod,
}

FUNCTIONS = {
    'sin': np.sin,
    'cos': np.cos,
    'tan': np.tan,
    'asin': np.arcsin,
    'acos': np.arccos,
    'atan': np.arctan,
    'sqrt': np.sqrt,
    'ln': np.log,
    'log': np.log10,
}

# argument outside the function's domain
DOMAIN_VIOLATIONS = {
    'asin': lambda v: v < -1.0 or v > 1.0,
    'acos': lambda v: v < -1.0 or v > 1.0,
    'sqrt': lambda v: v < 0.0,
    'ln': lambda v: v <= 0.0,
    'log': lambda v: v <= 0.0,
}


def evaluate_rpn(rpn: 'tuple[Token, ...] | list[Token]', x: float = 0.0) -> float:
    """
    Evaluates an RPN sequence with a single operand stack, substituting x for
    the variable. Overflow and invalid powers follow IEEE-754 (inf, nan);
    only division by zero and function domain violations are errors.
    """
    x = float(x)
    operands: list[float] = []

    with np.errstate(all='ignore'):
        for token in rpn:
            match token.type:
                case TokenType.NUMBER:
                    operands.append(token.value)
                case TokenType.VARIABLE:
                    operands.append(x)
                case TokenType.UNARY_OPERATOR:
                    _demand_operands(operands, 1, token)
                    operand = operands.pop()
                    operands.append(-operand if token.text == '-' else operand)
                case TokenType.BINARY_OPERATOR:
                    _demand_operands(operands, 2, token)
                    right = operands.pop()
                    left = operands.pop()
                    operands.append(_apply_binary(token, left, right))
                case TokenType.FUNCTION:
                    _demand_operands(operands, 1, token)
                    operands.append(_apply_function(token, operands.pop()))
                case _:
                    token.throw(MalformedExpression, f'Unexpected "{token.text}"')

    if len(operands) != 1:
        source = rpn[0].source if rpn else ''
        raise MalformedExpression('Malformed expression', source)
    return operands[0]


def _demand_operands(operands: 'list[float]', count: int, token: Token):
    if len(operands) < count:
        token.throw(InsufficientOperands, f'Not enough operands for "{token.text}"')


def _apply_binary(token: Token, left: float, right: float) -> float:
    if token.text in ('/', 'mod') and right == 0:
        token.throw(DivisionByZero, 'Division by zero')
    return float(BINARY_OPERATIONS[token.text](left, right))


def _apply_function(token: Token, value: float) -> float:
    violates = DOMAIN_VIOLATIONS.get(token.text)
    if violates is not None and violates(value):
        token.throw(DomainError, f'Invalid input for {token.text}: {value:g}',
                    function=token.text, value=value)
    return float(FUNCTIONS[token.text](value))


############
## Facade ##
############

class MathCalc():
    """
    A parsed expression. Lexing and conversion happen once here; calculate()
    may then be called any number of times with different x values, which is
    what plotting needs.

    Instances are not synchronized. The rpn tuple is never mutated and may be
    shared between threads.
    """

    def __init__(self, expression: str):
        self.expression = expression
        self.rpn = convert_to_rpn(parse_expression(expression))

    def calculate(self, x: float = 0.0) -> float:
        return evaluate_rpn(self.rpn, x)

    def calculate_range(self, x_min: float, x_max: float,
                        n: int) -> 'tuple[np.ndarray, np.ndarray]':
        """
        Samples the expression at n evenly spaced points over [x_min, x_max],
        both ends included. The first failing sample aborts the whole call.
        """
        xs = np.linspace(x_min, x_max, n)
        ys = np.empty_like(xs)
        for i, x in enumerate(xs):
            ys[i] = evaluate_rpn(self.rpn, x)
        logger.debug('sampled %r at %d points over [%g, %g]', self.expression, n, x_min, x_max)
        return xs, ys


def calculate(expression: str, x: float = 0.0) -> float:
    """Lexes, converts and evaluates the expression once."""
    return MathCalc(expression).calculate(x)


def calculate_range(expression: str, x_min: float, x_max: float,
                    n: int) -> 'tuple[np.ndarray, np.ndarray]':
    return MathCalc(expression).calculate_range(x_min, x_max, n)


################
## Exceptions ##
################

class CalcError(Exception):
    """
    Base of every engine error. Carries the source text and, where one
    applies, the span to underline.
    """

    def __init__(self, message: str, text: str, index: int | None = None, length: int = 1):
        self.message = message
        self.text = text
        self.index = index
        self.length = length

        if index is None:
            msg = f'''
ERROR: {self.text}
{self.message}'''
        else:
            msg = f'''
ERROR: {self.text}
       {self._get_error_highlight()}
{self.message}'''
        super().__init__(msg)

    def __reduce__(self):
        return (type(self), (self.message, self.text, self.index, self.length))

    @property
    def kind(self) -> str:
        return type(self).__name__

    def _get_error_highlight(self) -> str:
        return ' ' * self.index + '^' * max(self.length, 1)


class InvalidCharacter(CalcError):
    pass


class InvalidNumber(CalcError):
    pass


class InvalidToken(CalcError):
    pass


class MissingOperator(CalcError):
    pass


class UnmatchedBracket(CalcError):
    pass


class InsufficientOperands(CalcError):
    pass


class DivisionByZero(CalcError):
    pass


class DomainError(CalcError):
    def __init__(self, message: str, text: str, index: int | None = None, length: int = 1,
                 function: str = '', value: float = math.nan):
        self.function = function
        self.value = value
        super().__init__(message, text, index, length)

    def __reduce__(self):
        return (type(self), (self.message, self.text, self.index, self.length,
                             self.function, self.value))


class MalformedExpression(CalcError):
    pass
