"""Restricted interpreter for user-authored binding scripts.

Scripts are parsed with :mod:`ast` and walked node by node; nothing is ever
handed to ``eval``/``exec``.  Only an allow-listed subset of Python syntax is
accepted, names resolve against an explicit environment, and attribute
access is limited to sandbox namespaces and a few safe methods of plain
data types.
"""

from __future__ import annotations

import ast
import inspect
import logging
import operator
from collections import OrderedDict
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .errors import SandboxViolation, ScriptCompileError, ScriptRuntimeError

logger = logging.getLogger(__name__)

_AST_CACHE: "OrderedDict[Tuple[str, str], ast.AST]" = OrderedDict()
_AST_CACHE_MAXSIZE = 128

DEFAULT_ITERATION_LIMIT = 10000
_MAX_SEQUENCE_LENGTH = 100000
_MAX_EXPONENT = 10000


def _get_parsed_ast(source: str, mode: str = "exec") -> ast.AST:
    key = (mode, source)
    node = _AST_CACHE.get(key)
    if node is not None:
        _AST_CACHE.move_to_end(key)
        return node
    node = ast.parse(source, mode=mode)
    _AST_CACHE[key] = node
    if len(_AST_CACHE) > _AST_CACHE_MAXSIZE:
        _AST_CACHE.popitem(last=False)
    return node


def _safe_range(*args):
    r = range(*args)
    if len(r) > _MAX_SEQUENCE_LENGTH:
        raise SandboxViolation("range() is too large")
    return r


SAFE_BUILTINS: Dict[str, Any] = {
    "abs": abs,
    "all": all,
    "any": any,
    "bool": bool,
    "dict": dict,
    "enumerate": enumerate,
    "float": float,
    "int": int,
    "len": len,
    "list": list,
    "max": max,
    "min": min,
    "range": _safe_range,
    "reversed": reversed,
    "round": round,
    "sorted": sorted,
    "str": str,
    "sum": sum,
    "tuple": tuple,
    "zip": zip,
}

_SAFE_METHODS = {
    str: frozenset({
        "lower", "upper", "strip", "lstrip", "rstrip", "split", "join",
        "replace", "startswith", "endswith", "find", "title", "capitalize",
        "zfill", "isdigit", "isalpha",
    }),
    list: frozenset({"append", "extend", "pop", "insert", "index", "count", "remove", "copy"}),
    dict: frozenset({"get", "keys", "values", "items", "copy", "update", "pop", "setdefault"}),
    tuple: frozenset({"index", "count"}),
    float: frozenset({"is_integer"}),
}

_BIN_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}

_CMP_OPS = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
}

_ALLOWED_NODES = (
    ast.Module, ast.Expression, ast.Expr, ast.Assign, ast.AugAssign,
    ast.If, ast.For, ast.While, ast.Break, ast.Continue, ast.Return, ast.Pass,
    ast.FunctionDef, ast.AsyncFunctionDef, ast.Lambda, ast.arguments, ast.arg,
    ast.keyword, ast.Name, ast.Load, ast.Store, ast.Constant, ast.BoolOp,
    ast.And, ast.Or, ast.BinOp, ast.UnaryOp, ast.Not, ast.UAdd, ast.USub,
    ast.Compare, ast.IfExp, ast.Call, ast.Attribute, ast.Subscript, ast.Slice,
    ast.List, ast.Tuple, ast.Dict, ast.Set, ast.JoinedStr, ast.FormattedValue,
    ast.Await, ast.Starred, ast.ListComp, ast.SetComp, ast.DictComp,
    ast.GeneratorExp, ast.comprehension,
) + tuple(_BIN_OPS) + tuple(_CMP_OPS)


class SandboxNamespace:
    """Read-only attribute view handed to scripts (helpers, module exports)."""

    __slots__ = ("_name", "_members")

    def __init__(self, name: str, members: Dict[str, Any]):
        self._name = name
        self._members = dict(members)

    def lookup(self, attr: str) -> Any:
        if attr not in self._members:
            raise ScriptRuntimeError(f"'{self._name}' has no member '{attr}'")
        return self._members[attr]

    def to_dict(self) -> Dict[str, Any]:
        return dict(self._members)

    def __contains__(self, item) -> bool:
        return item in self._members

    def __len__(self) -> int:
        return len(self._members)

    def __repr__(self) -> str:
        return f"SandboxNamespace({self._name}, {sorted(self._members)})"


class SandboxExposed:
    """Base for host objects whose listed attributes scripts may use."""

    sandbox_attributes: frozenset = frozenset()


class SandboxFunction:
    """A function defined inside a script (``def`` or ``lambda``)."""

    def __init__(self, name: str, args: ast.arguments, body: List[ast.stmt],
                 closure: "_Scope", interpreter: "_Interpreter", defaults: List[Any]):
        self.name = name
        self._args = args
        self._body = body
        self._closure = closure
        self._interpreter = interpreter
        self._defaults = defaults

    @property
    def param_count(self) -> int:
        return len(self._args.args)

    async def __call__(self, *args, **kwargs):
        params = [a.arg for a in self._args.args]
        if len(args) > len(params):
            raise ScriptRuntimeError(
                f"{self.name}() takes {len(params)} positional arguments but {len(args)} were given"
            )
        scope = _Scope(self._closure)
        first_default = len(params) - len(self._defaults)
        for i, param in enumerate(params):
            if i < len(args):
                scope.vars[param] = args[i]
            elif param in kwargs:
                scope.vars[param] = kwargs.pop(param)
            elif i >= first_default:
                scope.vars[param] = self._defaults[i - first_default]
            else:
                raise ScriptRuntimeError(f"{self.name}() missing argument '{param}'")
        if kwargs:
            raise ScriptRuntimeError(f"{self.name}() got unexpected arguments {sorted(kwargs)}")
        try:
            await _Interpreter(self._interpreter.iteration_limit).exec_block(self._body, scope)
        except _ReturnSignal as ret:
            return ret.value
        return None

    def __repr__(self) -> str:
        return f"<sandbox function {self.name}>"


class _ReturnSignal(Exception):
    def __init__(self, value):
        self.value = value


class _BreakSignal(Exception):
    pass


class _ContinueSignal(Exception):
    pass


class _Scope:
    __slots__ = ("vars", "parent")

    def __init__(self, parent: Optional["_Scope"] = None, variables: Optional[Dict[str, Any]] = None):
        self.vars: Dict[str, Any] = dict(variables or {})
        self.parent = parent

    def lookup(self, name: str):
        scope = self
        while scope is not None:
            if name in scope.vars:
                return scope.vars[name]
            scope = scope.parent
        if name in SAFE_BUILTINS:
            return SAFE_BUILTINS[name]
        raise ScriptRuntimeError(f"Unknown variable '{name}'")


def _validate(tree: ast.AST) -> None:
    for node in ast.walk(tree):
        if not isinstance(node, _ALLOWED_NODES):
            raise ScriptCompileError(f"Unsupported syntax: {type(node).__name__}")
        if isinstance(node, ast.Name) and node.id.startswith("__"):
            raise ScriptCompileError(f"Name '{node.id}' is not allowed")
        if isinstance(node, ast.Attribute) and node.attr.startswith("_"):
            raise ScriptCompileError(f"Attribute '{node.attr}' is not allowed")
        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)) and node.decorator_list:
            raise ScriptCompileError("Decorators are not allowed")


def _check_size(value):
    if isinstance(value, (str, list, tuple)) and len(value) > _MAX_SEQUENCE_LENGTH:
        raise SandboxViolation("Result is too large")
    return value


class _Interpreter:
    """Executes one run of a program; counts loop iterations."""

    def __init__(self, iteration_limit: int):
        self.iteration_limit = iteration_limit
        self.iterations = 0

    def _tick(self):
        self.iterations += 1
        if self.iterations > self.iteration_limit:
            raise SandboxViolation(f"Iteration limit of {self.iteration_limit} exceeded")

    # --- statements ---------------------------------------------------
    async def exec_block(self, body: Iterable[ast.stmt], scope: _Scope) -> None:
        for stmt in body:
            await self.exec_stmt(stmt, scope)

    async def exec_stmt(self, node: ast.stmt, scope: _Scope) -> None:
        if isinstance(node, ast.Expr):
            await self.eval(node.value, scope)
        elif isinstance(node, ast.Assign):
            value = await self.eval(node.value, scope)
            for target in node.targets:
                await self._assign(target, value, scope)
        elif isinstance(node, ast.AugAssign):
            op = _BIN_OPS.get(type(node.op))
            if op is None:
                raise SandboxViolation("Unsupported augmented operator")
            current = await self.eval(_as_load(node.target), scope)
            value = await self.eval(node.value, scope)
            await self._assign(node.target, self._binop(op, node.op, current, value), scope)
        elif isinstance(node, ast.If):
            if await self.eval(node.test, scope):
                await self.exec_block(node.body, scope)
            else:
                await self.exec_block(node.orelse, scope)
        elif isinstance(node, ast.For):
            iterable = await self.eval(node.iter, scope)
            broke = False
            for item in iterable:
                self._tick()
                await self._assign(node.target, item, scope)
                try:
                    await self.exec_block(node.body, scope)
                except _BreakSignal:
                    broke = True
                    break
                except _ContinueSignal:
                    continue
            if not broke:
                await self.exec_block(node.orelse, scope)
        elif isinstance(node, ast.While):
            broke = False
            while await self.eval(node.test, scope):
                self._tick()
                try:
                    await self.exec_block(node.body, scope)
                except _BreakSignal:
                    broke = True
                    break
                except _ContinueSignal:
                    continue
            if not broke:
                await self.exec_block(node.orelse, scope)
        elif isinstance(node, ast.Break):
            raise _BreakSignal()
        elif isinstance(node, ast.Continue):
            raise _ContinueSignal()
        elif isinstance(node, ast.Return):
            value = await self.eval(node.value, scope) if node.value is not None else None
            raise _ReturnSignal(value)
        elif isinstance(node, ast.Pass):
            return
        elif isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
            scope.vars[node.name] = await self._make_function(node.name, node.args, node.body, scope)
        else:
            raise SandboxViolation(f"Unsupported statement: {type(node).__name__}")

    async def _make_function(self, name, args: ast.arguments, body, scope) -> SandboxFunction:
        if args.vararg or args.kwarg or args.kwonlyargs or args.posonlyargs:
            raise SandboxViolation("Only plain positional parameters are supported")
        defaults = [await self.eval(d, scope) for d in args.defaults]
        return SandboxFunction(name, args, body, scope, self, defaults)

    async def _assign(self, target: ast.expr, value: Any, scope: _Scope) -> None:
        if isinstance(target, ast.Name):
            scope.vars[target.id] = value
        elif isinstance(target, (ast.Tuple, ast.List)):
            values = list(value)
            if len(values) != len(target.elts):
                raise ScriptRuntimeError("Unpacking length mismatch")
            for elt, item in zip(target.elts, values):
                await self._assign(elt, item, scope)
        elif isinstance(target, ast.Subscript):
            container = await self.eval(target.value, scope)
            if not isinstance(container, (dict, list)):
                raise SandboxViolation("Item assignment is only allowed on lists and dicts")
            container[await self.eval(target.slice, scope)] = value
        else:
            raise SandboxViolation(f"Cannot assign to {type(target).__name__}")

    # --- expressions --------------------------------------------------
    async def eval(self, node: ast.AST, scope: _Scope) -> Any:
        if isinstance(node, ast.Expression):
            return await self.eval(node.body, scope)
        if isinstance(node, ast.Constant):
            return node.value
        if isinstance(node, ast.Name):
            return scope.lookup(node.id)
        if isinstance(node, ast.BoolOp):
            if isinstance(node.op, ast.And):
                result = True
                for v in node.values:
                    result = await self.eval(v, scope)
                    if not result:
                        return result
                return result
            result = False
            for v in node.values:
                result = await self.eval(v, scope)
                if result:
                    return result
            return result
        if isinstance(node, ast.BinOp):
            op = _BIN_OPS.get(type(node.op))
            if op is None:
                raise SandboxViolation("Unsupported binary operator")
            left = await self.eval(node.left, scope)
            right = await self.eval(node.right, scope)
            return self._binop(op, node.op, left, right)
        if isinstance(node, ast.UnaryOp):
            operand = await self.eval(node.operand, scope)
            if isinstance(node.op, ast.Not):
                return not operand
            if isinstance(node.op, ast.UAdd):
                return +operand
            if isinstance(node.op, ast.USub):
                return -operand
            raise SandboxViolation("Unsupported unary operator")
        if isinstance(node, ast.Compare):
            left = await self.eval(node.left, scope)
            for op, comparator in zip(node.ops, node.comparators):
                right = await self.eval(comparator, scope)
                if not _CMP_OPS[type(op)](left, right):
                    return False
                left = right
            return True
        if isinstance(node, ast.IfExp):
            if await self.eval(node.test, scope):
                return await self.eval(node.body, scope)
            return await self.eval(node.orelse, scope)
        if isinstance(node, ast.Await):
            return await self._resolve(await self.eval(node.value, scope))
        if isinstance(node, ast.Call):
            return await self._call(node, scope)
        if isinstance(node, ast.Attribute):
            return self._get_attribute(await self.eval(node.value, scope), node.attr)
        if isinstance(node, ast.Subscript):
            container = await self.eval(node.value, scope)
            if isinstance(container, SandboxNamespace):
                return container.lookup(await self.eval(node.slice, scope))
            return container[await self.eval(node.slice, scope)]
        if isinstance(node, ast.Slice):
            lower = await self.eval(node.lower, scope) if node.lower else None
            upper = await self.eval(node.upper, scope) if node.upper else None
            step = await self.eval(node.step, scope) if node.step else None
            return slice(lower, upper, step)
        if isinstance(node, ast.List):
            return await self._elements(node.elts, scope)
        if isinstance(node, ast.Tuple):
            return tuple(await self._elements(node.elts, scope))
        if isinstance(node, ast.Set):
            return set(await self._elements(node.elts, scope))
        if isinstance(node, ast.Dict):
            result = {}
            for k, v in zip(node.keys, node.values):
                if k is None:
                    result.update(await self.eval(v, scope))
                else:
                    result[await self.eval(k, scope)] = await self.eval(v, scope)
            return result
        if isinstance(node, ast.JoinedStr):
            parts = []
            for value in node.values:
                parts.append(str(await self.eval(value, scope)))
            return _check_size("".join(parts))
        if isinstance(node, ast.FormattedValue):
            value = await self.eval(node.value, scope)
            if node.conversion == ord("r"):
                value = repr(value)
            elif node.conversion == ord("s"):
                value = str(value)
            spec = await self.eval(node.format_spec, scope) if node.format_spec else ""
            return format(value, spec)
        if isinstance(node, ast.Lambda):
            body = [ast.Return(value=node.body)]
            return await self._make_function("<lambda>", node.args, body, scope)
        if isinstance(node, (ast.ListComp, ast.SetComp, ast.GeneratorExp)):
            items = []
            await self._comprehend(node.generators, 0, _Scope(scope),
                                   lambda s: self.eval(node.elt, s), items)
            return set(items) if isinstance(node, ast.SetComp) else items
        if isinstance(node, ast.DictComp):
            pairs = []

            async def _pair(s):
                return (await self.eval(node.key, s), await self.eval(node.value, s))

            await self._comprehend(node.generators, 0, _Scope(scope), _pair, pairs)
            return dict(pairs)
        raise SandboxViolation(f"Unsupported expression: {type(node).__name__}")

    async def _comprehend(self, generators, index, scope, produce, out) -> None:
        if index == len(generators):
            out.append(await produce(scope))
            return
        gen = generators[index]
        for item in await self.eval(gen.iter, scope):
            self._tick()
            await self._assign(gen.target, item, scope)
            conditions_met = True
            for cond in gen.ifs:
                if not await self.eval(cond, scope):
                    conditions_met = False
                    break
            if conditions_met:
                await self._comprehend(generators, index + 1, scope, produce, out)
        _check_size(out)

    async def _elements(self, elts, scope) -> list:
        items = []
        for elt in elts:
            if isinstance(elt, ast.Starred):
                items.extend(await self.eval(elt.value, scope))
            else:
                items.append(await self.eval(elt, scope))
        return items

    def _binop(self, op, op_node, left, right):
        if isinstance(op_node, ast.Pow) and isinstance(right, (int, float)) and abs(right) > _MAX_EXPONENT:
            raise SandboxViolation("Exponent is too large")
        if isinstance(op_node, ast.Mult):
            for seq, count in ((left, right), (right, left)):
                if isinstance(seq, (str, list, tuple)) and isinstance(count, int):
                    if len(seq) * count > _MAX_SEQUENCE_LENGTH:
                        raise SandboxViolation("Result is too large")
        return _check_size(op(left, right))

    async def _call(self, node: ast.Call, scope: _Scope) -> Any:
        func = await self.eval(node.func, scope)
        if isinstance(func, type) and func not in SAFE_BUILTINS.values():
            raise SandboxViolation(f"Calling {func.__name__} is not allowed")
        if not callable(func):
            raise ScriptRuntimeError(f"'{type(func).__name__}' object is not callable")
        args = await self._elements(node.args, scope)
        kwargs = {}
        for kw in node.keywords:
            if kw.arg is None:
                kwargs.update(await self.eval(kw.value, scope))
            else:
                kwargs[kw.arg] = await self.eval(kw.value, scope)
        return await self._resolve(func(*args, **kwargs))

    @staticmethod
    async def _resolve(value):
        if inspect.isawaitable(value):
            return await value
        return value

    @staticmethod
    def _get_attribute(obj: Any, attr: str) -> Any:
        if isinstance(obj, SandboxNamespace):
            return obj.lookup(attr)
        if isinstance(obj, SandboxExposed) and attr in type(obj).sandbox_attributes:
            return getattr(obj, attr)
        allowed = _SAFE_METHODS.get(type(obj))
        if allowed and attr in allowed:
            return getattr(obj, attr)
        raise SandboxViolation(f"Attribute access '{attr}' is not allowed")


def _as_load(target: ast.expr) -> ast.expr:
    if isinstance(target, ast.Name):
        return ast.Name(id=target.id, ctx=ast.Load())
    if isinstance(target, ast.Subscript):
        return ast.Subscript(value=target.value, slice=target.slice, ctx=ast.Load())
    raise SandboxViolation(f"Cannot assign to {type(target).__name__}")


class SandboxProgram:
    """A validated script that can be run any number of times."""

    def __init__(self, source: str, tree: ast.Module):
        self.source = source
        self._tree = tree

    @property
    def single_lambda(self) -> bool:
        """True when the whole program is one ``lambda`` expression."""
        body = self._tree.body
        return len(body) == 1 and isinstance(body[0], ast.Expr) and isinstance(body[0].value, ast.Lambda)

    async def run(self, variables: Dict[str, Any], *, iteration_limit: int = DEFAULT_ITERATION_LIMIT) -> Any:
        """Run the program; the result is the ``return`` value or the value
        of a trailing expression statement."""
        interpreter = _Interpreter(iteration_limit)
        scope = _Scope(variables=variables)
        body = self._tree.body
        try:
            if body and isinstance(body[-1], ast.Expr):
                await interpreter.exec_block(body[:-1], scope)
                return await interpreter.eval(body[-1].value, scope)
            await interpreter.exec_block(body, scope)
        except _ReturnSignal as ret:
            return ret.value
        except (_BreakSignal, _ContinueSignal):
            raise ScriptRuntimeError("'break' or 'continue' outside loop")
        return None

    async def run_module(self, variables: Dict[str, Any], *, iteration_limit: int = DEFAULT_ITERATION_LIMIT) -> Dict[str, Any]:
        """Run as a module and return its public top-level names."""
        interpreter = _Interpreter(iteration_limit)
        scope = _Scope(variables=variables)
        try:
            await interpreter.exec_block(self._tree.body, scope)
        except (_ReturnSignal, _BreakSignal, _ContinueSignal):
            raise ScriptRuntimeError("'return', 'break' or 'continue' at module level")
        return {
            name: value
            for name, value in scope.vars.items()
            if not name.startswith("_") and name not in variables
        }


def compile_script(source: str) -> SandboxProgram:
    """Parse and validate ``source``; raises :class:`ScriptCompileError`."""
    try:
        tree = _get_parsed_ast(source, "exec")
    except SyntaxError as exc:
        raise ScriptCompileError(f"Invalid script syntax: {exc.msg} (line {exc.lineno})") from exc
    _validate(tree)
    return SandboxProgram(source, tree)


async def safe_eval(expr: str, variables: Dict[str, Any]) -> Tuple[Any, Optional[str]]:
    """Safely evaluate a single expression.

    Returns (value, error).  On success error is None, otherwise value is None
    and error contains a message.
    """
    try:
        tree = _get_parsed_ast(expr, "eval")
        _validate(tree)
    except SyntaxError as exc:
        logger.warning("Expression syntax error: %s", exc)
        return None, "Invalid expression syntax"
    except ScriptCompileError as exc:
        return None, str(exc)

    try:
        return await _Interpreter(DEFAULT_ITERATION_LIMIT).eval(tree, _Scope(variables=variables)), None
    except Exception as exc:
        logger.debug("Expression evaluation error for '%s': %s", expr, exc)
        return None, str(exc)
