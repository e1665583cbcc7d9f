"""FuncRegistry: named functions that a Shell can run in a child process.

A registered function is invoked in a re-executed child. The parent
encodes the name and arguments into the PROCSHELL_INVOCATION variable;
the child's init_main decodes it, calls the function and exits.

Signatures are checked at registration: positional parameters and
``*args`` only, each annotation must be JSON-encodable under pydantic,
and the function must return None.
"""

from __future__ import annotations

import base64
import binascii
import importlib
import inspect
import logging
import os
import sys
import typing
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from pydantic import TypeAdapter, ValidationError
from pydantic.errors import PydanticSchemaGenerationError, PydanticUserError
from pydantic_core import PydanticSerializationError

from .child import init_child_main
from .env_filter import ENV_INVOCATION
from .errors import (
    ERR_ALREADY_CALLED_INIT_MAIN,
    UsageError,
)
from .models import Invocation

logger = logging.getLogger(__name__)

_NO_HINT = object()


@dataclass
class Func:
    """A function registered with a FuncRegistry."""

    name: str
    fn: Callable[..., None]
    registry: FuncRegistry
    params: list[TypeAdapter] = field(default_factory=list)
    required: int = 0
    variadic: TypeAdapter | None = None

    def __call__(self, *args: Any) -> None:
        self.fn(*args)

    def adapters(self, nargs: int) -> list[TypeAdapter]:
        """Return the adapter for each of nargs arguments. Raises TypeError on arity."""
        if nargs < self.required:
            raise TypeError(
                f"{self.name}: too few arguments, want at least {self.required}, got {nargs}"
            )
        if self.variadic is None and nargs > len(self.params):
            raise TypeError(
                f"{self.name}: too many arguments, want at most {len(self.params)}, got {nargs}"
            )
        extra = nargs - len(self.params)
        return self.params[:nargs] + [self.variadic] * max(extra, 0)


def _adapter(fn_name: str, pname: str, hint: Any) -> TypeAdapter:
    try:
        adapter = TypeAdapter(Any if hint is _NO_HINT else hint)
        adapter.json_schema()
    except (PydanticSchemaGenerationError, PydanticUserError) as exc:
        raise TypeError(
            f"{fn_name}: parameter '{pname}' has a non-encodable type {hint!r}"
        ) from exc
    return adapter


class FuncRegistry:
    """In-memory registry mapping names to child-runnable functions.

    ``location`` is the ``module:attr`` import path of this registry. When
    set, children are started with ``python -m procshell <location>``;
    otherwise the running program is re-executed and must call init_main
    before its own logic.
    """

    def __init__(self, location: str | None = None) -> None:
        self.location = location
        self._funcs: dict[str, Func] = {}
        self._called_init_main = False

    @property
    def called_init_main(self) -> bool:
        return self._called_init_main

    def register(self, name: str, fn: Callable[..., None]) -> Func:
        """Register fn under name. Raises ValueError on duplicate name."""
        if name in self._funcs:
            raise ValueError(f"Function '{name}' already registered")
        try:
            hints = typing.get_type_hints(fn)
        except (NameError, TypeError) as exc:
            raise TypeError(f"{name}: cannot resolve annotations: {exc}") from exc
        if hints.get("return", type(None)) is not type(None):
            raise TypeError(f"{name}: must return None, not {hints['return']!r}")

        func = Func(name=name, fn=fn, registry=self)
        for param in inspect.signature(fn).parameters.values():
            hint = hints.get(param.name, _NO_HINT)
            if param.kind in (param.POSITIONAL_ONLY, param.POSITIONAL_OR_KEYWORD):
                func.params.append(_adapter(name, param.name, hint))
                if param.default is param.empty:
                    func.required += 1
            elif param.kind == param.VAR_POSITIONAL:
                func.variadic = _adapter(name, param.name, hint)
            else:
                raise TypeError(
                    f"{name}: keyword parameter '{param.name}' is not supported"
                )
        self._funcs[name] = func
        return func

    def func(self, name: str) -> Callable[[Callable[..., None]], Func]:
        """Decorator form of register."""

        def decorate(fn: Callable[..., None]) -> Func:
            return self.register(name, fn)

        return decorate

    def get(self, name: str) -> Func | None:
        """Get a registered function by name, or None if not found."""
        return self._funcs.get(name)

    def _lookup(self, name: str) -> Func:
        func = self._funcs.get(name)
        if func is None:
            raise KeyError(f"Function '{name}' not registered")
        return func

    def list_funcs(self) -> list[str]:
        return sorted(self._funcs)

    def encode(self, name: str, *args: Any) -> str:
        """Check args against the signature of name and encode the call."""
        func = self._lookup(name)
        encoded = []
        for i, (adapter, arg) in enumerate(zip(func.adapters(len(args)), args)):
            try:
                value = adapter.validate_python(arg, strict=True)
                encoded.append(adapter.dump_python(value, mode="json"))
            except (ValidationError, PydanticSerializationError) as exc:
                raise TypeError(
                    f"{name}: cannot use argument {i} ({arg!r}): {exc}"
                ) from exc
        inv = Invocation(name=name, args=encoded)
        return base64.b64encode(inv.model_dump_json().encode()).decode("ascii")

    def decode(self, s: str) -> tuple[str, list[Any]]:
        """Recover the name and JSON-ready arguments from an encoded call."""
        try:
            raw = base64.b64decode(s.encode("ascii"), validate=True)
            inv = Invocation.model_validate_json(raw)
        except (binascii.Error, UnicodeEncodeError, ValidationError) as exc:
            raise ValueError(f"invalid invocation {s!r}: {exc}") from exc
        return inv.name, inv.args

    def call(self, name: str, *args: Any) -> None:
        """Call name with args converted to its parameter types."""
        func = self._lookup(name)
        values = []
        for i, (adapter, arg) in enumerate(zip(func.adapters(len(args)), args)):
            try:
                values.append(adapter.validate_python(arg))
            except ValidationError as exc:
                raise TypeError(
                    f"{name}: cannot use argument {i} ({arg!r}): {exc}"
                ) from exc
        func.fn(*values)

    def init_main(self) -> None:
        """Run the encoded invocation, if any, and exit.

        Returns without doing anything when this process was not started
        by Shell.func_cmd. Call it before any other startup logic.
        """
        if self._called_init_main:
            raise UsageError(ERR_ALREADY_CALLED_INIT_MAIN)
        self._called_init_main = True
        encoded = os.environ.pop(ENV_INVOCATION, "")
        if not encoded:
            return
        init_child_main()
        try:
            name, args = self.decode(encoded)
            self.call(name, *args)
        except Exception:
            logger.exception("registry: invocation failed")
            sys.exit(1)
        sys.exit(0)


def load_registry(location: str) -> FuncRegistry:
    """Import a registry from a ``module:attr`` path."""
    module_name, sep, attr = location.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"registry location must be 'module:attr', got {location!r}")
    module = importlib.import_module(module_name)
    registry = getattr(module, attr, None)
    if not isinstance(registry, FuncRegistry):
        raise TypeError(f"{location} is not a FuncRegistry")
    return registry
