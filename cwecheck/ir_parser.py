"""
cwecheck/ir_parser.py
═════════════════════

Parser for the compact textual form of IR terms.

Examples
────────

    RAX := mem[RSP + 0x8]
    mem[RBP - 8] := RDI
    ZF := RAX == 0
    when ZF goto 0x401020
    goto 0x401040
    call @malloc returns 0x401030
    call mem[0x601018] returns 0x401030
    return

Registers are case-insensitive and normalised to upper case.  Numbers are
decimal, ``0x`` hexadecimal or ``0o`` octal.  Operator precedence follows
C: unary, multiplicative, additive, shift, comparison, ``&``, ``^``, ``|``.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, List, Optional, Tuple, Union

from parsimonious.exceptions import ParseError, VisitationError
from parsimonious.grammar import Grammar
from parsimonious.nodes import Node, NodeVisitor

from cwecheck.errors import IRParseError
from cwecheck.ir import (
    BasicBlock,
    BinOp,
    Call,
    CondGoto,
    Const,
    Def,
    Expr,
    Goto,
    Load,
    Return,
    Store,
    Term,
    UnknownExpr,
    UnOp,
    Var,
)

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════
#  PART 1 — IR GRAMMAR (Parsimonious PEG)
# ═══════════════════════════════════════════════════════════════════

IR_GRAMMAR = Grammar(r'''
    # ─────────────────────────────────────────────────────────────
    # Terms
    # ─────────────────────────────────────────────────────────────

    term            = _ statement _
    expr_line       = _ expr _
    statement       = store / cond_goto / goto / call / return_ / def

    def             = register _ ":=" _ expr
    store           = "mem" _ "[" _ expr _ "]" _ ":=" _ expr
    goto            = "goto" __ expr
    cond_goto       = "when" __ expr __ "goto" __ expr
    call            = "call" __ callee returns_clause?
    returns_clause  = __ "returns" __ number
    callee          = extern / expr
    extern          = "@" symbol_name
    return_         = ~r"return(?![A-Za-z0-9_])"

    # ─────────────────────────────────────────────────────────────
    # Expressions (C precedence, loosest first)
    # ─────────────────────────────────────────────────────────────

    expr            = bitor
    bitor           = bitxor (_ or_op _ bitxor)*
    bitxor          = bitand (_ xor_op _ bitand)*
    bitand          = compare (_ and_op _ compare)*
    compare         = shift (_ cmp_op _ shift)?
    shift           = additive (_ shift_op _ additive)*
    additive        = multiplicative (_ add_op _ multiplicative)*
    multiplicative  = unary (_ mul_op _ unary)*
    unary           = prefixed / atom
    prefixed        = unary_op _ unary
    atom            = load / paren / number / unknown / register
    load            = "mem" _ "[" _ expr _ "]"
    paren           = "(" _ expr _ ")"

    # ─────────────────────────────────────────────────────────────
    # Lexical
    # ─────────────────────────────────────────────────────────────

    or_op           = "|"
    xor_op          = "^"
    and_op          = "&"
    cmp_op          = "==" / "!=" / "<=" / ">=" / "<" / ">"
    shift_op        = "<<" / ">>"
    add_op          = "+" / "-"
    mul_op          = "*" / "/" / "%"
    unary_op        = "-" / "~" / "!"

    number          = hex / oct / dec
    hex             = ~r"0[xX][0-9a-fA-F]+"
    oct             = ~r"0[oO][0-7]+"
    dec             = ~r"[0-9]+"
    unknown         = ~r"unknown(?![A-Za-z0-9_])"
    register        = ~r"[A-Za-z_#][A-Za-z0-9_#.]*"
    symbol_name     = ~r"[A-Za-z_.$?][A-Za-z0-9_.$?@]*"

    _               = ~r"[ \t]*"
    __              = ~r"[ \t]+"
''')


class _ExternRef:
    __slots__ = ("name",)

    def __init__(self, name: str) -> None:
        self.name = name


# ═══════════════════════════════════════════════════════════════════
#  PART 2 — VISITOR (Parse Tree → IR)
# ═══════════════════════════════════════════════════════════════════

class IRBuilder(NodeVisitor):
    """Transforms a parsimonious parse tree into IR terms/expressions."""

    def __init__(self, address: int = 0) -> None:
        self.address = address

    def generic_visit(self, node: Node, visited_children: List[Any]) -> Any:
        return visited_children or node

    # ── terms ──────────────────────────────────────────────────────

    def visit_term(self, node, visited_children):
        _, statement, _ = visited_children
        return statement

    def visit_expr_line(self, node, visited_children):
        _, expr, _ = visited_children
        return expr

    def visit_statement(self, node, visited_children):
        return visited_children[0]

    def visit_def(self, node, visited_children):
        register, _, _, _, value = visited_children
        return Def(self.address, register.name, value)

    def visit_store(self, node, visited_children):
        target = visited_children[4]
        value = visited_children[10]
        return Store(self.address, target, value)

    def visit_goto(self, node, visited_children):
        return Goto(self.address, visited_children[2])

    def visit_cond_goto(self, node, visited_children):
        return CondGoto(self.address, visited_children[2], visited_children[6])

    def visit_call(self, node, visited_children):
        _, _, callee, returns = visited_children
        return_to = returns[0] if isinstance(returns, list) and returns else None
        if isinstance(callee, _ExternRef):
            return Call(self.address, extern=callee.name, return_to=return_to)
        return Call(self.address, target=callee, return_to=return_to)

    def visit_returns_clause(self, node, visited_children):
        return visited_children[3].value

    def visit_callee(self, node, visited_children):
        return visited_children[0]

    def visit_extern(self, node, visited_children):
        return _ExternRef(visited_children[1].text)

    def visit_return_(self, node, visited_children):
        return Return(self.address)

    # ── expressions ────────────────────────────────────────────────

    @staticmethod
    def _fold(first: Expr, rest: Any) -> Expr:
        if not isinstance(rest, list):
            return first
        result = first
        for item in rest:
            _, op, _, operand = item
            result = BinOp(op, result, operand)
        return result

    def visit_expr(self, node, visited_children):
        return visited_children[0]

    def visit_bitor(self, node, visited_children):
        return self._fold(*visited_children)

    visit_bitxor = visit_bitor
    visit_bitand = visit_bitor
    visit_compare = visit_bitor
    visit_shift = visit_bitor
    visit_additive = visit_bitor
    visit_multiplicative = visit_bitor

    def visit_unary(self, node, visited_children):
        return visited_children[0]

    def visit_prefixed(self, node, visited_children):
        op, _, operand = visited_children
        if op == "-" and isinstance(operand, Const):
            return Const(-operand.value)
        return UnOp(op, operand)

    def visit_atom(self, node, visited_children):
        return visited_children[0]

    def visit_load(self, node, visited_children):
        return Load(visited_children[4])

    def visit_paren(self, node, visited_children):
        return visited_children[2]

    def _op_text(self, node, visited_children):
        return node.text

    visit_or_op = _op_text
    visit_xor_op = _op_text
    visit_and_op = _op_text
    visit_cmp_op = _op_text
    visit_shift_op = _op_text
    visit_add_op = _op_text
    visit_mul_op = _op_text
    visit_unary_op = _op_text

    def visit_number(self, node, visited_children):
        return Const(visited_children[0])

    def visit_hex(self, node, visited_children):
        return int(node.text, 16)

    def visit_oct(self, node, visited_children):
        return int(node.text[2:], 8)

    def visit_dec(self, node, visited_children):
        return int(node.text, 10)

    def visit_unknown(self, node, visited_children):
        return UnknownExpr()

    def visit_register(self, node, visited_children):
        return Var(node.text.upper())


# ═══════════════════════════════════════════════════════════════════
#  PART 3 — PUBLIC API
# ═══════════════════════════════════════════════════════════════════

def _parse(rule: str, text: str, address: int) -> Any:
    try:
        tree = IR_GRAMMAR[rule].parse(text)
    except ParseError as exc:
        raise IRParseError(text, position=exc.pos, reason=str(exc)) from exc
    try:
        return IRBuilder(address).visit(tree)
    except VisitationError as exc:
        raise IRParseError(text, reason=str(exc)) from exc


def parse_term(text: str, address: int = 0) -> Term:
    """Parse one textual IR term lifted from the instruction at ``address``."""
    return _parse("term", text, address)


def parse_expr(text: str) -> Expr:
    """Parse a standalone IR expression."""
    return _parse("expr_line", text, 0)


TermSource = Union[str, Tuple[int, str]]


def parse_block(address: int, terms: Iterable[TermSource]) -> BasicBlock:
    """Build a block from textual terms.

    Each entry is either ``"text"`` (lifted from the block's first
    instruction) or ``(instruction_address, "text")``.
    """
    parsed: List[Term] = []
    for entry in terms:
        if isinstance(entry, str):
            term_addr, text = address, entry
        else:
            term_addr, text = entry
        parsed.append(parse_term(text, term_addr))
    logger.debug("parsed block %#x with %d terms", address, len(parsed))
    return BasicBlock(address, tuple(parsed))


def parse_address(value: Optional[Union[int, str]]) -> Optional[int]:
    """Accept ints and ``"0x..."`` strings for addresses in documents."""
    if value is None or isinstance(value, int):
        return value
    return int(str(value), 0)


__all__ = [
    "IR_GRAMMAR",
    "IRBuilder",
    "parse_term",
    "parse_expr",
    "parse_block",
    "parse_address",
]
