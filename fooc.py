#!/usr/bin/env python3
import os, sys, shutil, subprocess
import argparse
import math
import shlex
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, FrozenSet, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

from ply.lex import lex
from ply.yacc import yacc, NullLogger
from llvmlite import ir, binding

Span = Tuple[int, int]

# ============================================================
# Diagnostics
# ============================================================

class DiagnosticError(Exception):
    """A diagnostic could not be placed in its source text."""


@dataclass
class Source:
    path: str
    text: str
    lines: List[str]

    @staticmethod
    def from_path(path: str) -> "Source":
        with open(path, "r", encoding="utf-8") as f:
            txt = f.read()
        return Source.from_text(txt, path=os.path.abspath(path))

    @staticmethod
    def from_text(text: str, path: str = "<input>") -> "Source":
        return Source(path=path, text=text, lines=text.split("\n"))

    def line_col(self, pos: int) -> Tuple[int, int]:
        # compute (line, col) from absolute index, both 1-based
        line = self.text.count("\n", 0, pos) + 1
        bol = self.text.rfind("\n", 0, pos)
        col = pos - bol
        return line, col

    def check_span(self, span: Span):
        start, end = span
        if not (0 <= start <= end <= len(self.text)):
            raise DiagnosticError(
                f"span {start}..{end} is outside of {self.path} ({len(self.text)} characters)")


@dataclass
class Diag:
    kind: str  # "error" | "note" | "warning"
    msg: str
    src: Source
    span: Span
    label: Optional[str] = None
    hint: Optional[str] = None

    def format(self, use_color: bool = True) -> str:
        self.src.check_span(self.span)
        start, end = self.span
        line, col = self.src.line_col(start)
        code = self.src.lines[line - 1].rstrip("\r")

        # ANSI color codes
        if use_color:
            RESET, BOLD, RED, YELLOW, BLUE, CYAN = "\033[0m", "\033[1m", "\033[31m", "\033[33m", "\033[34m", "\033[36m"
            kind_color = f"{BOLD}{RED}" if self.kind == "error" else (f"{BOLD}{YELLOW}" if self.kind == "warning" else f"{BOLD}{BLUE}")
            arrow_color = RED if self.kind == "error" else (YELLOW if self.kind == "warning" else BLUE)
        else:
            RESET = BOLD = RED = YELLOW = BLUE = CYAN = kind_color = arrow_color = ""

        header = f"{kind_color}{self.kind}{RESET}{BOLD}: {self.msg}{RESET}"
        location = f"{BOLD}{BLUE}-->{RESET} {self.src.path}:{line}:{col}"

        line_num_width = len(str(line))
        line_prefix = f"{BOLD}{BLUE}{line:>{line_num_width}} |{RESET} "
        empty_prefix = f"{BOLD}{BLUE}{' ' * line_num_width} |{RESET}"

        # underline the span, clipped to the line it starts on
        width = max(1, min(end - start, len(code) - (col - 1)))
        marker = "^" + "~" * (width - 1)
        label = f" {self.label}" if self.label else ""
        underline = " " * (col - 1) + f"{BOLD}{arrow_color}{marker}{label}{RESET}"

        result = f"{header}\n{location}\n{empty_prefix}\n{line_prefix}{code}\n{empty_prefix} {underline}"

        if self.hint:
            result += f"\n{empty_prefix}\n{empty_prefix} {BOLD}{CYAN}help:{RESET} {self.hint}"

        return result


class ErrorSink:
    def __init__(self) -> None:
        self.errors: List[Diag] = []

    def error(self, msg: str, src: Source, span: Span, label: Optional[str] = None, hint: Optional[str] = None):
        self.errors.append(Diag("error", msg, src, span, label, hint))

    def ok(self) -> bool:
        return not self.errors

    def render(self, use_color: bool = True) -> str:
        # Empty line between diagnostics
        return "\n\n".join(d.format(use_color) for d in self.errors)


def render_syntax_errors(src: Source, issues: Sequence["SyntaxIssue"], use_color: bool = True) -> str:
    es = ErrorSink()
    for issue in issues:
        if issue.message is not None:
            es.error(issue.message, src, issue.span, label="here")
        else:
            es.error(issue.describe(), src, issue.span, label=f"found {issue.found_text()}")
    return es.render(use_color)


def render_semantic_error(src: Source, err: "SemanticError", use_color: bool = True) -> str:
    if err.span is None:
        if use_color:
            return f"\033[1m\033[31merror\033[0m\033[1m: {err}\033[0m"
        return f"error: {err}"
    return Diag("error", str(err), src, err.span, hint=err.hint).format(use_color)

# ============================================================
# Lexer
# ============================================================

reserved = {
    "let": "LET",
    "fn": "FN",
}

tokens = (
    # literals & ids
    "NUMBER", "NAME",

    # punctuation
    "LPAREN", "RPAREN", "COMMA", "SEMICOLON", "ASSIGN",

    # operators
    "PLUS", "MINUS", "TIMES", "DIVIDE",

    # keywords
    "LET", "FN",
)

# human readable names used in "expected ..." messages
TOKEN_DESCRIPTIONS = {
    "NUMBER": "number",
    "NAME": "identifier",
    "LPAREN": "'('",
    "RPAREN": "')'",
    "COMMA": "','",
    "SEMICOLON": "';'",
    "ASSIGN": "'='",
    "PLUS": "'+'",
    "MINUS": "'-'",
    "TIMES": "'*'",
    "DIVIDE": "'/'",
    "LET": "'let'",
    "FN": "'fn'",
    "$end": "end of input",
}

# ============================================================
# AST
# ============================================================

# Spans never take part in equality; two trees parsed from differently
# spaced text compare equal.

@dataclass
class Num:
    value: float
    span: Optional[Span] = field(default=None, compare=False)

@dataclass
class Var:
    name: str
    span: Optional[Span] = field(default=None, compare=False)

@dataclass
class Neg:
    operand: "Expr"
    span: Optional[Span] = field(default=None, compare=False)

@dataclass
class Add:
    left: "Expr"
    right: "Expr"
    span: Optional[Span] = field(default=None, compare=False)

@dataclass
class Sub:
    left: "Expr"
    right: "Expr"
    span: Optional[Span] = field(default=None, compare=False)

@dataclass
class Mul:
    left: "Expr"
    right: "Expr"
    span: Optional[Span] = field(default=None, compare=False)

@dataclass
class Div:
    left: "Expr"
    right: "Expr"
    span: Optional[Span] = field(default=None, compare=False)

@dataclass
class Call:
    name: str
    args: List["Expr"]
    span: Optional[Span] = field(default=None, compare=False)
    name_span: Optional[Span] = field(default=None, compare=False)

@dataclass
class Let:
    name: str
    rhs: "Expr"
    then: "Expr"
    span: Optional[Span] = field(default=None, compare=False)
    name_span: Optional[Span] = field(default=None, compare=False)

@dataclass
class Fn:
    name: str
    params: List[str]
    body: "Expr"
    then: "Expr"
    span: Optional[Span] = field(default=None, compare=False)
    name_span: Optional[Span] = field(default=None, compare=False)
    param_spans: List[Span] = field(default_factory=list, compare=False)

Expr = Union[Num, Var, Neg, Add, Sub, Mul, Div, Call, Let, Fn]

BINARY_NODES = (Add, Sub, Mul, Div)


def set_span(node: Expr, span: Span) -> Expr:
    """Fill in the span of any node kind; returns the node for chaining."""
    node.span = span
    return node


def walk(node: Expr) -> Iterator[Expr]:
    """Yield every node of the tree in pre-order."""
    stack = [node]
    while stack:
        e = stack.pop()
        yield e
        if isinstance(e, (Num, Var)):
            continue
        elif isinstance(e, Neg):
            stack.append(e.operand)
        elif isinstance(e, BINARY_NODES):
            stack.extend((e.right, e.left))
        elif isinstance(e, Call):
            stack.extend(reversed(e.args))
        elif isinstance(e, Let):
            stack.extend((e.then, e.rhs))
        elif isinstance(e, Fn):
            stack.extend((e.then, e.body))
        else:
            raise TypeError(f"unhandled syntax node {type(e).__name__}")

# ============================================================
# Parser (PLY)
# ============================================================

@dataclass(frozen=True)
class SyntaxIssue:
    """One syntax error: either an expected/found mismatch or a custom message."""
    span: Span
    expected: FrozenSet[str] = frozenset()
    found: Optional[str] = None  # None means end of input
    message: Optional[str] = None

    def found_text(self) -> str:
        return "end of input" if self.found is None else f"'{self.found}'"

    def describe(self) -> str:
        if self.message is not None:
            return self.message
        if not self.expected:
            return f"invalid syntax, unexpected {self.found_text()}"
        return f"invalid syntax, expected {', '.join(sorted(self.expected))}"


class ParseError(Exception):
    def __init__(self, issues: List[SyntaxIssue]):
        self.issues = issues
        super().__init__("; ".join(i.describe() for i in issues))


# Precedence - ordered from lowest to highest
precedence = (
    ('left', 'PLUS', 'MINUS'),
    ('left', 'TIMES', 'DIVIDE'),
    ('right', 'UMINUS'),
)


def _token_span(p, idx: int) -> Span:
    start = p.lexpos(idx)
    return (start, start + len(p.slice[idx].value))


class FooParser:
    """Lexer and grammar for one parse; issues are collected on the instance."""

    tokens = tokens
    precedence = precedence
    t_ignore = " \t\r"

    t_PLUS      = r"\+"
    t_MINUS     = r"-"
    t_TIMES     = r"\*"
    t_DIVIDE    = r"/"
    t_LPAREN    = r"\("
    t_RPAREN    = r"\)"
    t_COMMA     = r","
    t_SEMICOLON = r";"
    t_ASSIGN    = r"="

    def __init__(self, text: str):
        self.text = text
        self.issues: List[SyntaxIssue] = []
        self.lexer = lex(module=self, errorlog=NullLogger())
        self.parser = yacc(module=self, start="program", debug=False,
                           write_tables=False, errorlog=NullLogger())

    def parse(self) -> Expr:
        tree = self.parser.parse(self.text, lexer=self.lexer)
        if self.issues or tree is None:
            raise ParseError(self.issues or [
                SyntaxIssue((len(self.text), len(self.text)), message="unable to parse program")])
        return tree

    # ---- tokens

    def t_comment(self, t):
        r'//[^\n]*'
        pass

    def t_NUMBER(self, t):
        r'\d+'
        # kept as text; converted in the grammar so the span stays exact
        return t

    def t_NAME(self, t):
        r'[A-Za-z_][A-Za-z0-9_]*'
        t.type = reserved.get(t.value, "NAME")
        return t

    def t_newline(self, t):
        r'\n+'
        t.lexer.lineno += len(t.value)

    def t_error(self, t):
        self.issues.append(SyntaxIssue(
            (t.lexpos, t.lexpos + 1), message=f"unrecognized character {t.value[0]!r}"))
        t.lexer.skip(1)

    # ---- grammar

    def p_program(self, p):
        """program : decl"""
        p[0] = p[1]

    def p_decl_let(self, p):
        """decl : LET NAME ASSIGN expression SEMICOLON decl"""
        p[0] = Let(p[2], p[4], p[6], span=(p.lexpos(1), p[6].span[1]),
                   name_span=_token_span(p, 2))

    def p_decl_fn(self, p):
        """decl : FN NAME params ASSIGN expression SEMICOLON decl"""
        names, spans = p[3]
        p[0] = Fn(p[2], names, p[5], p[7], span=(p.lexpos(1), p[7].span[1]),
                  name_span=_token_span(p, 2), param_spans=spans)

    def p_decl_expression(self, p):
        """decl : expression"""
        p[0] = p[1]

    def p_decl_result_then(self, p):
        """decl : expression SEMICOLON decl"""
        # the first plain expression ends the chain; whatever follows is
        # still checked for syntax but can never be reached
        p[0] = p[1]

    # Recovery: skip a broken right-hand side up to the next ';', or up to the
    # next declaration when the ';' itself is missing, and keep parsing the
    # rest of the chain so later mistakes are reported too.
    def p_decl_let_error(self, p):
        """decl : LET NAME ASSIGN error SEMICOLON decl
                | LET NAME ASSIGN error decl"""
        p[0] = p[len(p) - 1]

    def p_decl_fn_error(self, p):
        """decl : FN NAME params ASSIGN error SEMICOLON decl
                | FN NAME params ASSIGN error decl"""
        p[0] = p[len(p) - 1]

    def p_decl_result_error(self, p):
        """decl : expression error decl"""
        p[0] = p[1]

    def p_params(self, p):
        """params : params NAME
                  | """
        if len(p) == 3:
            names, spans = p[1]
            p[0] = (names + [p[2]], spans + [_token_span(p, 2)])
        else:
            p[0] = ([], [])

    def p_expression_binops(self, p):
        """expression : expression PLUS expression
                      | expression MINUS expression
                      | expression TIMES expression
                      | expression DIVIDE expression"""
        node = {"PLUS": Add, "MINUS": Sub, "TIMES": Mul, "DIVIDE": Div}[p.slice[2].type]
        p[0] = node(p[1], p[3], span=(p[1].span[0], p[3].span[1]))

    def p_expression_unary(self, p):
        """expression : MINUS expression %prec UMINUS"""
        p[0] = Neg(p[2], span=(p.lexpos(1), p[2].span[1]))

    def p_expression_number(self, p):
        """expression : NUMBER"""
        span = _token_span(p, 1)
        value = float(p[1])
        if math.isinf(value):
            self.issues.append(SyntaxIssue(span, message="numeric literal out of range"))
        p[0] = Num(value, span=span)

    def p_expression_group(self, p):
        """expression : LPAREN expression RPAREN"""
        p[0] = set_span(p[2], (p.lexpos(1), p.lexpos(3) + 1))

    def p_expression_call(self, p):
        """expression : NAME LPAREN args RPAREN"""
        p[0] = Call(p[1], p[3], span=(p.lexpos(1), p.lexpos(4) + 1),
                    name_span=_token_span(p, 1))

    def p_expression_group_error(self, p):
        """expression : LPAREN error
                      | NAME LPAREN error"""
        # placeholder; the tree is discarded once any issue was recorded
        p[0] = Num(0.0, span=(p.lexpos(1), p.lexpos(1) + 1))

    def p_expression_name(self, p):
        """expression : NAME"""
        p[0] = Var(p[1], span=_token_span(p, 1))

    def p_args(self, p):
        """args : arg_list
                | arg_list COMMA
                | """
        p[0] = p[1] if len(p) > 1 else []

    def p_arg_list(self, p):
        """arg_list : arg_list COMMA expression
                    | expression"""
        if len(p) == 4:
            p[0] = p[1] + [p[3]]
        else:
            p[0] = [p[1]]

    def p_error(self, p):
        state = self.parser.statestack[-1]
        expected = frozenset(
            TOKEN_DESCRIPTIONS[tok] for tok in self.parser.action[state]
            if tok in TOKEN_DESCRIPTIONS)
        if p is None:
            end = len(self.text)
            self.issues.append(SyntaxIssue((end, end), expected, None))
        else:
            self.issues.append(SyntaxIssue(_lextoken_span(p), expected, str(p.value)))


def _lextoken_span(tok) -> Span:
    return (tok.lexpos, tok.lexpos + len(str(tok.value)))


def parse(text: str) -> Expr:
    """Parse a whole program, raising ParseError with every syntax issue found."""
    return FooParser(text).parse()

# ============================================================
# Semantic errors
# ============================================================

class SemanticError(Exception):
    def __init__(self, message: str, span: Optional[Span] = None, hint: Optional[str] = None):
        super().__init__(message)
        self.span = span
        self.hint = hint


class DuplicateFunction(SemanticError):
    def __init__(self, name: str, span: Optional[Span] = None):
        super().__init__(f"function `{name}` already exists", span)
        self.name = name


class MalformedFunction(SemanticError):
    def __init__(self, name: str, span: Optional[Span] = None, detail: str = ""):
        msg = f"function `{name}` not built properly"
        super().__init__(f"{msg}: {detail}" if detail else msg, span)
        self.name = name


class UndefinedVariable(SemanticError):
    def __init__(self, name: str, span: Optional[Span] = None, hint: Optional[str] = None):
        super().__init__(f"variable `{name}` not found in scope", span, hint)
        self.name = name


class UndefinedFunction(SemanticError):
    def __init__(self, name: str, span: Optional[Span] = None):
        super().__init__(f"function `{name}` not found in scope", span,
                         "functions must be declared with `fn` before they are called")
        self.name = name


class ArityMismatch(SemanticError):
    def __init__(self, name: str, expected: int, got: int, span: Optional[Span] = None):
        super().__init__(
            f"function `{name}` takes {expected} argument(s) but {got} were supplied", span)
        self.name = name
        self.expected = expected
        self.got = got


class CallFailed(SemanticError):
    def __init__(self, name: str, span: Optional[Span] = None):
        super().__init__(f"call to `{name}` does not produce a value", span)
        self.name = name


class NestingTooDeep(SemanticError):
    def __init__(self, limit: int, span: Optional[Span] = None):
        super().__init__(f"expression nested more than {limit} levels deep", span)
        self.limit = limit

# ============================================================
# Backend (llvmlite)
# ============================================================

DOUBLE = ir.DoubleType()
I8_PTR = ir.IntType(8).as_pointer()


class Backend:
    """Narrow wrapper around an llvmlite module and its builder.

    The code generator only talks to this class: declaring functions,
    entering blocks, emitting arithmetic, calls and returns, and asking
    LLVM to verify what was built.
    """

    def __init__(self, name: str):
        self.module = ir.Module(name=name)
        self.builder = ir.IRBuilder()
        self.printf = ir.Function(
            self.module, ir.FunctionType(ir.IntType(32), [I8_PTR], var_arg=True), name="printf")
        self.fmt: Optional[ir.GlobalVariable] = None

    def has_global(self, name: str) -> bool:
        return name in self.module.globals

    def declare_function(self, name: str, params: Sequence[str], void: bool = False) -> ir.Function:
        ret = ir.VoidType() if void else DOUBLE
        func = ir.Function(self.module, ir.FunctionType(ret, [DOUBLE] * len(params)), name=name)
        for arg, pname in zip(func.args, params):
            arg.name = pname
        return func

    def enter_block(self, func: ir.Function, label: str) -> ir.Block:
        block = func.append_basic_block(label)
        self.builder.position_at_end(block)
        return block

    def resume(self, block: ir.Block):
        self.builder.position_at_end(block)

    def const(self, value: float) -> ir.Constant:
        return ir.Constant(DOUBLE, value)

    def arith(self, op: str, lhs: ir.Value, rhs: ir.Value) -> ir.Value:
        b = self.builder
        if op == "add": return b.fadd(lhs, rhs, name="addtmp")
        if op == "sub": return b.fsub(lhs, rhs, name="subtmp")
        if op == "mul": return b.fmul(lhs, rhs, name="multmp")
        if op == "div": return b.fdiv(lhs, rhs, name="divtmp")
        raise ValueError(f"unknown arithmetic op {op!r}")

    def neg(self, value: ir.Value) -> ir.Value:
        return self.builder.fneg(value, name="negtmp")

    def call(self, func: ir.Function, args: Sequence[ir.Value]) -> Optional[ir.Value]:
        """Emit a call; returns None when the callee yields no value."""
        void = isinstance(func.function_type.return_type, ir.VoidType)
        # void results cannot carry a name in LLVM IR
        inst = self.builder.call(func, list(args), name="" if void else "calltmp")
        return None if void else inst

    def ret(self, value: Optional[ir.Value] = None):
        if value is None:
            self.builder.ret_void()
        else:
            self.builder.ret(value)

    def print_value(self, value: ir.Value):
        """Emit printf("%f\\n", value)."""
        if self.fmt is None:
            arr = bytearray(b"%f\n\0")
            ty_arr = ir.ArrayType(ir.IntType(8), len(arr))
            gv = ir.GlobalVariable(self.module, ty_arr, name=".fmt")
            gv.global_constant = True
            gv.linkage = "internal"
            gv.initializer = ir.Constant(ty_arr, arr)
            self.fmt = gv
        ptr = self.builder.bitcast(self.fmt, I8_PTR)
        self.builder.call(self.printf, [ptr, value], name="printtmp")

    def verify_function(self, func: ir.Function) -> Optional[str]:
        """Check one function with LLVM's verifier; returns the failure text or None.

        The function is verified on its own, next to declarations of every
        other function in the module, since the rest of the module may still
        be under construction.
        """
        if any(not block.is_terminated for block in func.blocks):
            return "basic block is missing a terminator"
        scratch = ir.Module(name=f"{self.module.name}.verify")
        for gv in self.module.global_values:
            if isinstance(gv, ir.Function) and gv is not func:
                ir.Function(scratch, gv.function_type, name=gv.name)
        try:
            binding.parse_assembly(f"{scratch}\n{func}").verify()
        except RuntimeError as e:
            return str(e).strip()
        return None

    def verify_module(self) -> Optional[str]:
        try:
            binding.parse_assembly(str(self.module)).verify()
        except RuntimeError as e:
            return str(e).strip()
        return None

# ============================================================
# Code generation
# ============================================================

# Deepest expression nesting the generator will recurse into. A nested call
# takes two Python frames per level, so this stays well under the default
# recursion limit of 1000.
MAX_DEPTH = 256

BINARY_OPS = {Add: "add", Sub: "sub", Mul: "mul", Div: "div"}

Env = Mapping[str, ir.Value]

EMPTY_ENV: Env = MappingProxyType({})


def extend_env(env: Env, name: str, value: ir.Value) -> Env:
    """Return a new environment with `name` bound; `env` itself is left untouched."""
    scope = dict(env)
    scope[name] = value
    return MappingProxyType(scope)


@dataclass
class FuncEntry:
    arity: int
    handle: ir.Function


class CodeGen:
    def __init__(self, module_name: str = "foo"):
        self.backend = Backend(module_name)
        self.funcs: Dict[str, FuncEntry] = {}
        self.in_function: Optional[str] = None

    # ----- compile
    def build(self, program: Expr) -> ir.Module:
        be = self.backend
        main = be.declare_function("main", [], void=True)
        self.funcs["main"] = FuncEntry(0, main)
        main_block = be.enter_block(main, "main_enter")

        env: Env = EMPTY_ENV
        e = program
        while True:
            if isinstance(e, Fn):
                self._define_function(e)
                be.resume(main_block)
                e = e.then
            elif isinstance(e, Let):
                env = extend_env(env, e.name, self._visit(e.rhs, env, 0))
                e = e.then
            else:
                # first plain expression is the program's result; anything
                # after it is unreachable
                be.print_value(self._visit(e, env, 0))
                break

        be.ret()
        problem = be.verify_module()
        if problem is not None:
            raise MalformedFunction("main", detail=problem)
        return be.module

    def _define_function(self, fd: Fn):
        be = self.backend
        if be.has_global(fd.name):
            raise DuplicateFunction(fd.name, fd.name_span or fd.span)
        func = be.declare_function(fd.name, fd.params)
        self.funcs[fd.name] = FuncEntry(len(fd.params), func)
        be.enter_block(func, f"{fd.name}_enter")

        # parameters start a fresh scope; enclosing lets are not visible
        env: Env = EMPTY_ENV
        for arg, pname in zip(func.args, fd.params):
            env = extend_env(env, pname, arg)

        self.in_function = fd.name
        try:
            be.ret(self._visit(fd.body, env, 0))
        finally:
            self.in_function = None

        problem = be.verify_function(func)
        if problem is not None:
            raise MalformedFunction(fd.name, fd.name_span or fd.span, problem)

    # ----- expressions
    def _visit(self, e: Expr, env: Env, depth: int) -> ir.Value:
        if depth > MAX_DEPTH:
            raise NestingTooDeep(MAX_DEPTH, e.span)
        be = self.backend
        if isinstance(e, Num):
            return be.const(e.value)
        if isinstance(e, Var):
            if e.name in env:
                return env[e.name]
            hint = None
            if self.in_function is not None:
                hint = f"the body of `{self.in_function}` only sees its own parameters"
            raise UndefinedVariable(e.name, e.span, hint)
        if isinstance(e, Neg):
            return be.neg(self._visit(e.operand, env, depth + 1))
        if isinstance(e, BINARY_NODES):
            # `a + b + c + ...` nests down the left side; walk that spine in a
            # loop so only right operands count as nesting
            spine = []
            while isinstance(e, BINARY_NODES):
                spine.append(e)
                e = e.left
            acc = self._visit(e, env, depth + 1)
            for node in reversed(spine):
                rhs = self._visit(node.right, env, depth + 1)
                acc = be.arith(BINARY_OPS[type(node)], acc, rhs)
            return acc
        if isinstance(e, Call):
            return self._visit_call(e, env, depth)
        if isinstance(e, (Let, Fn)):
            raise TypeError(f"{type(e).__name__} is only valid in a declaration chain")
        raise TypeError(f"unhandled expression node {type(e).__name__}")

    def _visit_call(self, e: Call, env: Env, depth: int) -> ir.Value:
        entry = self.funcs.get(e.name)
        if entry is None:
            raise UndefinedFunction(e.name, e.name_span or e.span)
        if len(e.args) != entry.arity:
            raise ArityMismatch(e.name, entry.arity, len(e.args), e.span)
        # _visit -> _visit_call -> _visit: a call level costs two frames
        args = []
        for a in e.args:
            args.append(self._visit(a, env, depth + 1))
        value = self.backend.call(entry.handle, args)
        if value is None:
            raise CallFailed(e.name, e.span)
        return value


def generate(program: Expr, module_name: str = "foo") -> ir.Module:
    """Lower a parsed program to an LLVM module, raising the first SemanticError."""
    return CodeGen(module_name).build(program)

# ============================================================
# Target machine & emission
# ============================================================

class BuildError(Exception):
    """A failure outside the compiler core: target, emission, output or linking."""


class TargetError(BuildError):
    pass


class EmitError(BuildError):
    pass


class OutputPathError(BuildError):
    pass


class LinkerNotFound(BuildError):
    pass


class LinkerFailed(BuildError):
    def __init__(self, linker: str, returncode: int, detail: str = ""):
        msg = f"linker `{linker}` failed with exit status {returncode}"
        super().__init__(f"{msg}: {detail}" if detail else msg)
        self.linker = linker
        self.returncode = returncode


def init_target(triple: Optional[str] = None) -> binding.Target:
    binding.initialize_all_targets()
    binding.initialize_all_asmprinters()
    triple = triple or binding.get_default_triple()
    try:
        return binding.Target.from_triple(triple)
    except RuntimeError as e:
        raise TargetError(f"unsupported target triple '{triple}': {str(e).strip()}") from e


def machine_from_target(target: binding.Target) -> binding.TargetMachine:
    return target.create_target_machine(reloc="pic", codemodel="default")


def _finalize(module: ir.Module, machine: binding.TargetMachine) -> binding.ModuleRef:
    # Make the textual IR self-describing
    module.triple = machine.triple
    module.data_layout = str(machine.target_data)
    try:
        mod = binding.parse_assembly(str(module))
        mod.verify()
    except RuntimeError as e:
        raise EmitError(f"LLVM rejected the generated module: {str(e).strip()}") from e
    return mod


def emit_ir(module: ir.Module, machine: binding.TargetMachine) -> str:
    _finalize(module, machine)
    return str(module)


def emit_object(module: ir.Module, machine: binding.TargetMachine) -> bytes:
    return machine.emit_object(_finalize(module, machine))


def emit_assembly(module: ir.Module, machine: binding.TargetMachine) -> str:
    return machine.emit_assembly(_finalize(module, machine))


def emit_bitcode(module: ir.Module, machine: binding.TargetMachine) -> bytes:
    return _finalize(module, machine).as_bitcode()


def check_output_path(path: str):
    if os.path.exists(path) and not os.path.isfile(path):
        raise OutputPathError(f"'{path}' exists and isn't a file")


def write_output(path: str, data: Union[str, bytes]):
    check_output_path(path)
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    mode = "wb" if isinstance(data, bytes) else "w"
    try:
        with open(path, mode) as f:
            f.write(data)
    except OSError as e:
        raise OutputPathError(f"cannot write '{path}': {e.strerror or e}") from e
    print(f"Wrote {path}", file=sys.stderr)

# ============================================================
# Linker
# ============================================================

# Tried in order when no linker is requested explicitly.
LINKERS = ("clang", "gcc", "link", "ld", "lld")


def _quote_cmd(parts: List[str]) -> str:
    return " ".join(shlex.quote(p) for p in parts)


def _link_command(exe: str, name: str, obj_path: str, output: str) -> List[str]:
    if name == "link":
        return [exe, obj_path, f"/OUT:{output}"]
    return [exe, obj_path, "-o", output]


def _run_linker(exe: str, name: str, obj_path: str, output: str):
    cmd = _link_command(exe, name, obj_path, output)
    print(f"Linking with: {_quote_cmd(cmd)}", file=sys.stderr)
    try:
        proc = subprocess.run(cmd, check=False)
    except OSError as e:
        raise LinkerFailed(name, -1, e.strerror or str(e)) from e
    if proc.returncode != 0:
        raise LinkerFailed(name, proc.returncode)


def link_executable(obj_path: str, output: str, linker: Optional[str] = None):
    """Link `obj_path` into `output`, then remove the object file.

    With an explicit `linker` only that program is tried. Otherwise each of
    LINKERS that exists on PATH is tried in turn until one succeeds.
    """
    if linker is not None:
        exe = shutil.which(linker)
        if exe is None:
            raise LinkerNotFound(f"command `{linker}` couldn't be found")
        _run_linker(exe, linker, obj_path, output)
    else:
        last_error: Optional[LinkerFailed] = None
        for name in LINKERS:
            exe = shutil.which(name)
            if exe is None:
                continue
            try:
                _run_linker(exe, name, obj_path, output)
                break
            except LinkerFailed as e:
                last_error = e
        else:
            if last_error is not None:
                raise last_error
            raise LinkerNotFound("no known linkers were found")

    # clean up intermediary object file
    os.remove(obj_path)

    # Make sure it's executable on Unix
    if os.name != "nt":
        try:
            st = os.stat(output)
            os.chmod(output, st.st_mode | 0o111)
        except OSError:
            pass

# ============================================================
# Driver
# ============================================================

OUTPUT_KINDS = ("executable", "object", "assembly", "bitcode", "llvm-ir")

DEFAULT_SUFFIX = {
    "executable": "",
    "object": ".o",
    "assembly": ".s",
    "bitcode": ".bc",
    "llvm-ir": ".ll",
}


def use_color(mode: str, stream=None) -> bool:
    if mode == "always":
        return True
    if mode == "never":
        return False
    if os.environ.get("NO_COLOR"):
        return False
    stream = stream or sys.stderr
    return hasattr(stream, "isatty") and stream.isatty()


def output_path(requested: Optional[str], src_path: str, kind: str) -> str:
    if requested:
        check_output_path(requested)
        return requested
    stem = os.path.splitext(os.path.basename(src_path))[0] or "foo"
    if kind == "executable" and os.name == "nt":
        return stem + ".exe"
    return stem + DEFAULT_SUFFIX[kind]


def compile_file(path: str, output: Optional[str] = None, kind: str = "executable",
                 triple: Optional[str] = None, linker: Optional[str] = None,
                 color: bool = False) -> int:
    try:
        src = Source.from_path(path)
    except OSError as e:
        print(f"error: failed to open {path}: {e.strerror or e}", file=sys.stderr)
        return 1

    try:
        try:
            ast = parse(src.text)
        except ParseError as e:
            print(render_syntax_errors(src, e.issues, color), file=sys.stderr)
            return 1

        try:
            target = init_target(triple)
            machine = machine_from_target(target)
        except BuildError as e:
            print(f"error: {e}", file=sys.stderr)
            return 1

        modname = os.path.splitext(os.path.basename(path))[0] or "foo"
        try:
            module = generate(ast, module_name=modname)
        except SemanticError as e:
            print(render_semantic_error(src, e, color), file=sys.stderr)
            return 1
    except DiagnosticError as e:
        print(f"internal error: {e}", file=sys.stderr)
        return 1

    try:
        if kind == "llvm-ir":
            text = emit_ir(module, machine)
            if output:
                write_output(output, text)
            else:
                print(text, file=sys.stderr)
        elif kind == "object":
            write_output(output_path(output, path, kind), emit_object(module, machine))
        elif kind == "assembly":
            write_output(output_path(output, path, kind), emit_assembly(module, machine))
        elif kind == "bitcode":
            write_output(output_path(output, path, kind), emit_bitcode(module, machine))
        else:
            out = output_path(output, path, kind)
            obj_path = out + ".o"
            write_output(obj_path, emit_object(module, machine))
            link_executable(obj_path, out, linker)
            print(f"Linked {out}", file=sys.stderr)
    except BuildError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    return 0

# ============================================================
# CLI
# ============================================================

def build_arg_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="fooc", description="LLVM-based compiler for the Foo expression language")
    ap.add_argument("src", help="source file to compile")
    ap.add_argument("-o", "--output", help="path of the file to write")
    ap.add_argument("-p", "--produce", choices=OUTPUT_KINDS, default="executable",
                    help="kind of output to produce (llvm-ir goes to stderr unless -o is given)")
    ap.add_argument("-t", "--target",
                    help="target triple, e.g. x86_64-linux-gnu (default: host)")
    ap.add_argument("-l", "--linker", choices=LINKERS,
                    default=os.environ.get("FOOC_LINKER") or None,
                    help="linker to use for executables; fails if it is missing "
                         "(default: $FOOC_LINKER, else try each known linker)")
    ap.add_argument("--color", choices=("auto", "always", "never"), default="auto",
                    help="colorize diagnostics")
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    ap = build_arg_parser()
    args = ap.parse_args(argv)
    if args.linker is not None and args.linker not in LINKERS:
        ap.error(f"FOOC_LINKER must be one of {', '.join(LINKERS)} (got '{args.linker}')")
    return compile_file(args.src, output=args.output, kind=args.produce,
                        triple=args.target, linker=args.linker,
                        color=use_color(args.color))


if __name__ == "__main__":
    sys.exit(main())
