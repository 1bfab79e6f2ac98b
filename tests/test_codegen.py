"""
Code generation tests: lowering, scoping rules and the semantic error taxonomy.
"""

import pytest
from llvmlite import ir

import fooc
from fooc import (
    ArityMismatch, CallFailed, DuplicateFunction, MalformedFunction, Neg, Num,
    NestingTooDeep, UndefinedFunction, UndefinedVariable, EMPTY_ENV, extend_env,
    generate, parse,
)


def compile_src(text):
    return generate(parse(text))


def test_main_and_functions_are_declared():
    module = compile_src("let x = 1 + 2; fn double n = n * 2; double(x)")
    main = module.get_global("main")
    assert isinstance(main.function_type.return_type, ir.VoidType)
    assert [b.name for b in main.blocks] == ["main_enter"]

    double = module.get_global("double")
    assert isinstance(double.function_type.return_type, ir.DoubleType)
    assert [a.name for a in double.args] == ["n"]
    assert [b.name for b in double.blocks] == ["double_enter"]
    assert double.blocks[0].is_terminated
    assert main.blocks[0].is_terminated


def test_result_is_printed_with_a_format_string():
    module = compile_src("1")
    fmt = module.get_global(".fmt")
    assert bytes(fmt.initializer.constant) == b"%f\n\0"
    assert fmt.global_constant
    assert isinstance(module.get_global("printf").function_type.return_type, ir.IntType)


def test_constant_result(result_of):
    value = result_of(compile_src("42"))
    assert isinstance(value, ir.Constant)
    assert value.constant == 42.0


def test_shadowing_sees_the_prior_binding(result_of):
    value = result_of(compile_src("let x = 1; let x = x + 1; x"))
    assert value.opname == "fadd"
    lhs, rhs = value.operands
    assert lhs.constant == 1.0 and rhs.constant == 1.0


def test_trailing_declarations_are_unreachable(result_of):
    module = compile_src("let x = 1; x; let y = 2; y")
    assert result_of(module).constant == 1.0
    assert "2.0" not in str(module) and "0x4000000000000000" not in str(module)


def test_arithmetic_lowers_to_float_instructions():
    text = str(compile_src("fn f a b = -(a + b) * (a - b) / b; f(1, 2)"))
    for op in ("fadd", "fsub", "fmul", "fdiv", "fneg"):
        assert op in text


@pytest.mark.parametrize("src, expected", [
    ("2 + 3 * 4", 14.0),
    ("(2 + 3) * 4", 20.0),
    ("--5", 5.0),
    ("-5", -5.0),
    ("10 - 4 - 3", 3.0),
    ("8 / 4 / 2", 1.0),
])
def test_generated_code_computes(jit, src, expected):
    module = compile_src(f"fn result = {src}; 0")
    assert jit(module, "result") == expected


def test_functions_call_earlier_functions(jit):
    module = compile_src("fn sq n = n * n; fn hyp2 a b = sq(a) + sq(b); hyp2(3, 4)")
    assert jit(module, "hyp2", 3, 4) == 25.0
    assert jit(module, "sq", -3) == 9.0


def test_function_body_cannot_see_outer_lets():
    with pytest.raises(UndefinedVariable) as excinfo:
        compile_src("let x = 1; fn f y = x + y; f(2)")
    assert excinfo.value.name == "x"
    assert "`f`" in excinfo.value.hint


def test_undefined_variable_at_top_level():
    src = "let a = 1; a + b"
    with pytest.raises(UndefinedVariable) as excinfo:
        compile_src(src)
    err = excinfo.value
    assert err.name == "b"
    assert src[slice(*err.span)] == "b"
    assert err.hint is None


def test_duplicate_function_stops_before_its_body():
    with pytest.raises(DuplicateFunction) as excinfo:
        compile_src("fn f x = x; fn f y = nope; f(1)")
    assert excinfo.value.name == "f"


def test_duplicate_arity_is_still_a_collision():
    with pytest.raises(DuplicateFunction):
        compile_src("fn f x = x; fn f x y = x; f(1)")


@pytest.mark.parametrize("name", ["main", "printf"])
def test_runtime_symbols_cannot_be_redefined(name):
    with pytest.raises(DuplicateFunction) as excinfo:
        compile_src(f"fn {name} x = x; 1")
    assert excinfo.value.name == name


def test_arity_mismatch():
    with pytest.raises(ArityMismatch) as excinfo:
        compile_src("fn add a b = a + b; add(1)")
    err = excinfo.value
    assert (err.name, err.expected, err.got) == ("add", 2, 1)


def test_unknown_call():
    with pytest.raises(UndefinedFunction) as excinfo:
        compile_src("f(1)")
    assert excinfo.value.name == "f"


def test_no_forward_references():
    with pytest.raises(UndefinedFunction) as excinfo:
        compile_src("fn g y = f(y); fn f x = x; g(1)")
    assert excinfo.value.name == "f"


def test_function_may_call_itself():
    module = compile_src("fn loop x = loop(x); 1")
    func = module.get_global("loop")
    calls = [i for i in func.blocks[0].instructions if isinstance(i, ir.CallInstr)]
    assert [c.callee for c in calls] == [func]


def test_void_call_does_not_produce_a_value():
    with pytest.raises(CallFailed) as excinfo:
        compile_src("main() + 1")
    assert excinfo.value.name == "main"
    with pytest.raises(ArityMismatch):
        compile_src("main(1)")


def test_first_error_wins():
    # both `a` and `g` are unknown; `a` is lowered first
    with pytest.raises(UndefinedVariable):
        compile_src("a + g(1)")


def test_verification_failure_is_fatal(monkeypatch):
    monkeypatch.setattr(fooc.Backend, "verify_function", lambda self, func: "broken")
    with pytest.raises(MalformedFunction) as excinfo:
        compile_src("fn f x = x; f(1)")
    assert excinfo.value.name == "f"
    assert "broken" in str(excinfo.value)


def test_nesting_guard():
    program = Num(1)
    for _ in range(fooc.MAX_DEPTH + 5):
        program = Neg(program)
    with pytest.raises(NestingTooDeep):
        generate(program)


def test_nesting_below_the_limit_compiles(result_of):
    module = compile_src("-" * 100 + "7")
    assert result_of(module).opname == "fneg"


def nested_calls(levels):
    return "fn f x = x; " + "f(" * levels + "1" + ")" * levels


def test_nested_calls_below_the_limit_compile():
    module = compile_src(nested_calls(fooc.MAX_DEPTH - 1))
    calls = [i for i in module.get_global("main").blocks[0].instructions
             if isinstance(i, ir.CallInstr) and i.callee.name == "f"]
    assert len(calls) == fooc.MAX_DEPTH - 1


def test_nested_calls_past_the_limit_are_a_semantic_error():
    with pytest.raises(NestingTooDeep):
        compile_src(nested_calls(400))
    with pytest.raises(NestingTooDeep):
        compile_src(nested_calls(fooc.MAX_DEPTH * 3))


def test_long_flat_sums_are_not_nesting(result_of):
    module = compile_src(" + ".join(["1"] * 600))
    adds = [i for i in module.get_global("main").blocks[0].instructions
            if getattr(i, "opname", None) == "fadd"]
    assert len(adds) == 599
    assert result_of(module) is adds[-1]


def test_flat_chain_keeps_left_to_right_order():
    module = compile_src("fn f x = x; f(1) - f(2) * f(3) - f(4)")
    calls = [i for i in module.get_global("main").blocks[0].instructions
             if isinstance(i, ir.CallInstr) and i.callee.name == "f"]
    assert [c.args[0].constant for c in calls] == [1.0, 2.0, 3.0, 4.0]


def test_environment_extension_does_not_mutate():
    one, two = ir.Constant(ir.DoubleType(), 1), ir.Constant(ir.DoubleType(), 2)
    outer = extend_env(EMPTY_ENV, "x", one)
    inner = extend_env(outer, "x", two)
    assert outer["x"] is one
    assert inner["x"] is two
    assert "x" not in EMPTY_ENV
    with pytest.raises(TypeError):
        outer["y"] = two


def test_each_run_gets_fresh_tables():
    first = compile_src("fn f x = x; f(1)")
    second = compile_src("fn f x = x; f(2)")
    assert first is not second
    assert "f" in first.globals and "f" in second.globals


def test_module_name():
    assert generate(parse("1"), module_name="prog").name == "prog"
