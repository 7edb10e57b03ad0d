from __future__ import annotations

import argparse
from typing import Any, Literal, Tuple, Type, Union, cast, get_args, get_origin

from pydantic import BaseModel


def _unwrap_optional(tp: Any) -> Any:
    if get_origin(tp) is Union:
        args = [a for a in get_args(tp) if a is not type(None)]
        if len(args) == 1:
            return args[0]
    return tp


def _literal_choices(tp: Any) -> Tuple[Any, ...] | None:
    if get_origin(tp) is Literal:
        return get_args(tp)
    return None


def _argparse_type(tp: Any) -> type:
    # Anything richer than a scalar is passed as str and validated by pydantic.
    if tp in (str, int, float):
        return cast(type, tp)
    return str


def add_model_to_parser(parser: argparse.ArgumentParser, model: Type[BaseModel]) -> None:
    """
    Add one ``--flag`` per field of a pydantic model.

    The parsed namespace is meant for ``model.model_validate(vars(ns))``.
    Booleans become ``--flag/--no-flag``; Literal fields become choices.
    """
    for name, field in model.model_fields.items():
        ann = _unwrap_optional(field.annotation if field.annotation is not None else Any)
        flag = f"--{name.replace('_', '-')}"
        help_text = field.description or ""
        required = field.is_required()
        default = None if required else field.default

        if ann is bool:
            parser.add_argument(
                flag,
                dest=name,
                action=argparse.BooleanOptionalAction,
                default=bool(field.default),
                help=help_text,
            )
            continue

        choices = _literal_choices(ann)
        if choices is not None:
            parser.add_argument(
                flag,
                dest=name,
                choices=list(choices),
                default=default,
                required=required,
                help=help_text,
            )
            continue

        parser.add_argument(
            flag,
            dest=name,
            type=_argparse_type(ann),
            default=default,
            required=required,
            help=help_text,
        )
