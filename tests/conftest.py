import ctypes

import pytest
from llvmlite import binding, ir

import fooc


def _evaluate(program):
    """Reference semantics for the Foo language, straight off the AST."""
    funcs = {}

    def visit(e, env):
        if isinstance(e, fooc.Num):
            return e.value
        if isinstance(e, fooc.Var):
            return env[e.name]
        if isinstance(e, fooc.Neg):
            return -visit(e.operand, env)
        if isinstance(e, fooc.Add):
            return visit(e.left, env) + visit(e.right, env)
        if isinstance(e, fooc.Sub):
            return visit(e.left, env) - visit(e.right, env)
        if isinstance(e, fooc.Mul):
            return visit(e.left, env) * visit(e.right, env)
        if isinstance(e, fooc.Div):
            return visit(e.left, env) / visit(e.right, env)
        if isinstance(e, fooc.Call):
            fd = funcs[e.name]
            args = [visit(a, env) for a in e.args]
            return visit(fd.body, dict(zip(fd.params, args)))
        raise TypeError(type(e).__name__)

    env = {}
    e = program
    while True:
        if isinstance(e, fooc.Fn):
            funcs[e.name] = e
            e = e.then
        elif isinstance(e, fooc.Let):
            env = {**env, e.name: visit(e.rhs, env)}
            e = e.then
        else:
            return visit(e, env)


@pytest.fixture
def evaluate():
    return lambda text: _evaluate(fooc.parse(text))


@pytest.fixture(scope="session")
def jit():
    """Compile a generated module in-process and call one of its functions."""
    binding.initialize_native_target()
    binding.initialize_native_asmprinter()
    target = binding.Target.from_default_triple()

    def run(module, name, *args):
        mod = binding.parse_assembly(str(module))
        mod.verify()
        # the engine takes ownership of its machine; never share one
        machine = target.create_target_machine()
        engine = binding.create_mcjit_compiler(mod, machine)
        engine.finalize_object()
        addr = engine.get_function_address(name)
        proto = ctypes.CFUNCTYPE(ctypes.c_double, *([ctypes.c_double] * len(args)))
        return proto(addr)(*[float(a) for a in args])

    return run


def printed_value(module):
    """The value main hands to printf, i.e. the program's result."""
    main = module.get_global("main")
    for inst in main.blocks[0].instructions:
        if isinstance(inst, ir.CallInstr) and inst.callee.name == "printf":
            return inst.args[1]
    raise AssertionError("main does not print a result")


@pytest.fixture
def result_of():
    return printed_value
