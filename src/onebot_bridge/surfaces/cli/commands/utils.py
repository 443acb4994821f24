from __future__ import annotations

import importlib
from typing import Any, NoReturn, Optional

import typer

from ....integrations.onebot.runtime import ReplyRuntime


def raise_exit(message: str, *, cause: Optional[BaseException] = None) -> NoReturn:
    typer.echo(message, err=True)
    if cause is not None:
        raise typer.Exit(code=1) from cause
    raise typer.Exit(code=1)


def load_reply_runtime(spec: str) -> ReplyRuntime:
    """Import ``module:attribute``; call it when it is a factory."""

    module_name, sep, attribute = (spec or "").partition(":")
    if not sep or not module_name or not attribute:
        raise ValueError(f"Runtime must look like 'module:attribute', got {spec!r}")
    module = importlib.import_module(module_name)
    target: Any = module
    for part in attribute.split("."):
        target = getattr(target, part)
    if isinstance(target, type) or (
        not isinstance(target, ReplyRuntime) and callable(target)
    ):
        target = target()
    if not isinstance(target, ReplyRuntime):
        raise TypeError(f"{spec} does not provide a reply runtime")
    return target
