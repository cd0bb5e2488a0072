from __future__ import annotations

import secrets
import time
import typing

import click

EXTERNAL_ID_BYTES = 16


def print_steps(steps: typing.Sequence[tuple[str, typing.Any]]):
    click.secho(
        "∙ " + ("\n∙ ".join([name for name, _ in steps])) + "\n\n",
        fg="white",
        bold=True,
    )


def filter_steps_after_start(
    start_at_step: str | None, steps: list[tuple[str, typing.Any]]
) -> list[tuple[str, typing.Any]]:
    if len(steps) == 0 or start_at_step is None:
        return steps

    return steps[[name for (name, step) in steps].index(start_at_step) :]


def generate_external_id() -> str:
    return secrets.token_hex(EXTERNAL_ID_BYTES)


def assume_role_session_name(now: float | None = None) -> str:
    return f"TestSession-{int(time.time() if now is None else now)}"
