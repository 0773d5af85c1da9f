#!/usr/bin/env python3
"""
Expression Evaluator

This module provides expression evaluation capabilities for binary format handlers.
Supports arithmetic, logical, and comparison operators with proper precedence,
evaluated over the siblings already materialized in a Scope.
"""

import re
from collections.abc import Mapping
from typing import Any, Callable, Dict, Iterator, List, Optional, Set, Tuple, Union

from format_errors import BinaryFormatError, ContractViolation, ExpressionError


Expression = Union[str, int, float, bool, Callable[['Scope'], Any]]

FUNCTIONS: Dict[str, Callable[..., Any]] = {
    'len': len,
    'min': min,
    'max': max,
    'abs': abs,
    'int': int,
}

_IDENTIFIER = re.compile(r'(?<![\w.\'"])([A-Za-z_]\w*)((?:\.[A-Za-z_]\w*)*)\s*(\()?')
_STRING_LITERAL = re.compile(r'"[^"]*"|\'[^\']*\'')
_OPERATOR_CHARS = '+-*/%<>=!&|(,'


class Scope(Mapping):
    """
    Visibility window used by expressions: materialized siblings of the
    current type plus its bound arguments.

    Names declared in the type but not materialized yet cannot be read, this is
    what keeps inline expressions from looking at later fields.
    """

    def __init__(self, declared: List[str] = (), arguments: Optional[Dict[str, Any]] = None):
        self.declared = list(declared)
        self.arguments = dict(arguments or {})
        self.values: Dict[str, Any] = {}

    def __repr__(self):
        return f'<{self.__class__.__name__}(values={self.values!r}, arguments={self.arguments!r})>'

    def __getitem__(self, name: str) -> Any:
        if name in self.values:
            return self.values[name]
        if name in self.arguments:
            return self.arguments[name]
        if name in self.declared:
            raise ContractViolation(f"field '{name}' referenced before it is materialized")
        raise KeyError(name)

    def __iter__(self) -> Iterator[str]:
        yield from self.values
        yield from (_ for _ in self.arguments if _ not in self.values)

    def __len__(self) -> int:
        return len(set(self.values) | set(self.arguments))

    def __contains__(self, name) -> bool:
        return name in self.values or name in self.arguments

    def set(self, name: str, value: Any) -> None:
        self.values[name] = value


def referenced_names(expression: Expression) -> Set[str]:
    """Root names a string expression refers to (functions and literals excluded)."""
    if not isinstance(expression, str):
        return set()

    stripped = _STRING_LITERAL.sub('""', expression)
    names = set()
    for match in _IDENTIFIER.finditer(stripped):
        name, _, call = match.groups()
        if call and name in FUNCTIONS:
            continue
        if name.lower() in ('true', 'false'):
            continue
        names.add(name)

    return names


class ExpressionEvaluator:
    """Evaluates expressions with proper operator precedence and context support."""

    def __init__(self, context_getter=None):
        """
        Initialize the expression evaluator.

        Args:
            context_getter: Function to get nested values from context (e.g., dot notation)
        """
        self.context_getter = context_getter or self._default_context_getter

    def _default_context_getter(self, context: Mapping, path: str) -> Any:
        """Default implementation for getting nested values."""
        if not isinstance(context, Mapping) or not path:
            return None

        value = context
        for part in path.split('.'):
            index_part = None
            if '[' in part and part.endswith(']'):
                part, index_part = part[:part.index('[')], part[part.index('[') + 1:-1]

            if isinstance(value, Mapping):
                try:
                    value = value[part]
                except KeyError:
                    return None
            elif hasattr(value, part):
                value = getattr(value, part)
            else:
                return None

            if index_part is not None:
                try:
                    value = value[self._parse_logical_or(index_part, context)]
                except (TypeError, IndexError, KeyError):
                    return None

        return value

    def evaluate(self, expression: Expression, context: Mapping) -> Any:
        """
        Evaluate an expression against the given context.

        Args:
            expression: The expression string to evaluate, a literal, or a
                callable receiving the context
            context: Mapping containing variable values

        Returns:
            The result of the expression evaluation
        """
        if callable(expression):
            try:
                return expression(context)
            except BinaryFormatError:
                raise
            except Exception as e:
                raise ExpressionError(f"Error evaluating {expression!r}: {e!r}") from e
        if not isinstance(expression, str):
            return expression

        expression = expression.strip()
        if not expression:
            return True

        try:
            return self._parse_logical_or(expression, context)
        except ContractViolation:
            raise
        except Exception as e:
            raise ExpressionError(f"Error evaluating expression '{expression}': {e}") from e

    def _parse_logical_or(self, expression: str, context: Mapping) -> Any:
        """Parse logical OR expressions (lowest precedence)."""
        split = self._split_by_operator(expression, ['||'])
        if split:
            left, _, right = split
            return bool(self._parse_logical_and(left, context)) or bool(self._parse_logical_or(right, context))
        return self._parse_logical_and(expression, context)

    def _parse_logical_and(self, expression: str, context: Mapping) -> Any:
        """Parse logical AND expressions."""
        split = self._split_by_operator(expression, ['&&'])
        if split:
            left, _, right = split
            return bool(self._parse_equality(left, context)) and bool(self._parse_logical_and(right, context))
        return self._parse_equality(expression, context)

    def _parse_equality(self, expression: str, context: Mapping) -> Any:
        """Parse equality and inequality expressions."""
        split = self._split_by_operator(expression, ['==', '!='])
        if split:
            left, op, right = split
            left = self._parse_relational(left, context)
            right = self._parse_relational(right, context)
            return left == right if op == '==' else left != right
        return self._parse_relational(expression, context)

    def _parse_relational(self, expression: str, context: Mapping) -> Any:
        """Parse relational expressions (<, >, <=, >=)."""
        split = self._split_by_operator(expression, ['<=', '>=', '<', '>'])
        if split:
            left, op, right = split
            left = self._parse_additive(left, context)
            right = self._parse_additive(right, context)
            if op == '<':
                return left < right
            elif op == '>':
                return left > right
            elif op == '<=':
                return left <= right
            else:  # >=
                return left >= right
        return self._parse_additive(expression, context)

    def _parse_additive(self, expression: str, context: Mapping) -> Any:
        """Parse addition and subtraction expressions."""
        # Find the rightmost + or - that's not inside parentheses
        split = self._split_by_operator(expression, ['+', '-'], right_to_left=True)
        if split:
            left, op, right = split
            left = self._parse_additive(left, context)
            right = self._parse_multiplicative(right, context)
            return left + right if op == '+' else left - right
        return self._parse_multiplicative(expression, context)

    def _parse_multiplicative(self, expression: str, context: Mapping) -> Any:
        """Parse multiplication, division, and modulo expressions."""
        split = self._split_by_operator(expression, ['*', '/', '%'], right_to_left=True)
        if split:
            left, op, right = split
            left = self._parse_multiplicative(left, context)
            right = self._parse_unary(right, context)
            if op == '*':
                return left * right
            if right == 0:
                raise ExpressionError("Division by zero" if op == '/' else "Modulo by zero")
            if op == '/':
                # integer operands stay integers, offsets and sizes are counted in bytes
                if isinstance(left, int) and isinstance(right, int):
                    return left // right
                return left / right
            return left % right
        return self._parse_unary(expression, context)

    def _parse_unary(self, expression: str, context: Mapping) -> Any:
        """Parse unary expressions (!, -, +)."""
        expression = expression.strip()
        if expression.startswith('!') and not expression.startswith('!='):
            return not self._parse_unary(expression[1:], context)
        elif expression.startswith('-'):
            return -self._parse_unary(expression[1:], context)
        elif expression.startswith('+'):
            return self._parse_unary(expression[1:], context)
        return self._parse_primary(expression, context)

    def _parse_primary(self, expression: str, context: Mapping) -> Any:
        """Parse primary expressions (parentheses, literals, calls, field references)."""
        expression = expression.strip()
        if not expression:
            raise ExpressionError("empty operand")

        # Handle parentheses
        if expression.startswith('(') and expression.endswith(')'):
            # Verify parentheses are balanced
            if self._find_matching_paren(expression, 0) == len(expression) - 1:
                return self._parse_logical_or(expression[1:-1], context)

        # Handle string literals
        if len(expression) >= 2 and expression[0] in '"\'' and expression[-1] == expression[0]:
            return expression[1:-1]

        # Handle boolean literals
        if expression.lower() == 'true':
            return True
        elif expression.lower() == 'false':
            return False

        # Handle numeric literals
        if expression[0].isdigit() or expression[0] == '.':
            try:
                return int(expression, 0)
            except ValueError:
                return float(expression)

        # Handle function calls
        call = re.fullmatch(r'([A-Za-z_]\w*)\s*\((.*)\)', expression, re.DOTALL)
        if call and call.group(1) in FUNCTIONS and \
                self._find_matching_paren(expression, expression.index('(')) == len(expression) - 1:
            arguments = [self._parse_logical_or(_, context) for _ in self._split_arguments(call.group(2))]
            return FUNCTIONS[call.group(1)](*arguments)

        # Handle field references
        value = self.context_getter(context, expression)
        if value is None:
            root = re.split(r'[.\[]', expression, maxsplit=1)[0]
            if isinstance(context, Mapping) and root in context:
                raise ContractViolation(f"'{expression}' refers to an absent value")
            raise ContractViolation(f"Field '{expression}' not found in context")

        return value

    def _split_arguments(self, expression: str) -> List[str]:
        arguments = []
        while expression.strip():
            split = self._split_by_operator(expression, [','])
            if not split:
                arguments.append(expression)
                break
            arguments.append(split[0])
            expression = split[2]
        return arguments

    def _split_by_operator(self, expression: str, operators: List[str],
                           right_to_left: bool = False) -> Optional[Tuple[str, str, str]]:
        """Split expression by operator, respecting parentheses and quotes.

        Returns (left, operator, right) for the first top-level match in the
        scanning direction, None if there is no such operator.
        """
        # longest operators first so that '<=' is not seen as '<'
        operators = sorted(operators, key=len, reverse=True)

        paren_level = 0
        quote_char = None

        # Choose iteration direction
        if right_to_left:
            indices = range(len(expression) - 1, -1, -1)
        else:
            indices = range(len(expression))

        for i in indices:
            char = expression[i]

            # Handle quotes
            if char in ['"', "'"]:
                if quote_char is None:
                    quote_char = char
                elif quote_char == char:
                    quote_char = None
                continue

            if quote_char:
                continue

            # Handle parentheses
            if char in '([':
                paren_level += -1 if right_to_left else 1
            elif char in ')]':
                paren_level += 1 if right_to_left else -1

            # Check for operators at top level
            if paren_level != 0:
                continue

            for op in operators:
                start = i - len(op) + 1 if right_to_left else i
                if start < 0 or expression[start:start + len(op)] != op:
                    continue
                if self._is_part_of_longer_operator(expression, start, op):
                    continue
                if op in '+-' and self._is_unary(expression, start):
                    continue
                return expression[:start], op, expression[start + len(op):]

        return None

    @staticmethod
    def _is_part_of_longer_operator(expression: str, start: int, op: str) -> bool:
        before = expression[start - 1] if start > 0 else ''
        after = expression[start + len(op)] if start + len(op) < len(expression) else ''
        if op in ('<', '>'):
            return after == '=' or before == op or after == op
        if op == '=':
            return True
        if op == '!':
            return after == '='
        if op in ('&', '|'):
            return before == op or after == op
        return False

    @staticmethod
    def _is_unary(expression: str, start: int) -> bool:
        """A +/- with no operand on its left is a sign, not a binary operator."""
        before = expression[:start].rstrip()
        if not before or before[-1] in _OPERATOR_CHARS:
            return True
        # exponent of a float literal like 1e-3
        return bool(re.search(r'(?<![\w.])\d+(\.\d*)?[eE]$', before))

    def _find_matching_paren(self, expression: str, start: int) -> int:
        """Find the index of the matching closing parenthesis."""
        if start >= len(expression) or expression[start] != '(':
            return -1

        paren_count = 0
        quote_char = None

        for i in range(start, len(expression)):
            char = expression[i]

            # Handle quotes
            if char in ['"', "'"]:
                if quote_char is None:
                    quote_char = char
                elif quote_char == char:
                    quote_char = None
                continue

            if quote_char:
                continue

            # Handle parentheses
            if char == '(':
                paren_count += 1
            elif char == ')':
                paren_count -= 1
                if paren_count == 0:
                    return i

        return -1


evaluator = ExpressionEvaluator()


def evaluate(expression: Expression, scope: Mapping) -> Any:
    """Module-level shortcut used by the field pipeline."""
    return evaluator.evaluate(expression, scope)
