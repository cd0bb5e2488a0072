from __future__ import annotations

import typing

import click
import requests
from botocore.exceptions import BotoCoreError, ClientError

import ekslab.errors
import ekslab.junkdrawer

StepFunc = typing.Callable[[], None]


def step_names(steps: list[tuple[str, StepFunc]]) -> list[str]:
    return [name for name, _ in steps]


def run_steps(
    steps: list[tuple[str, StepFunc]],
    start_at: str | None = None,
    on_complete: typing.Callable[[str], None] | None = None,
) -> list[str]:
    """
    Run `steps` in order, optionally starting at the step named `start_at`.

    The first provider, tool or wait failure aborts the run with `StepFailed`.
    Returns the names of the steps that ran.
    """
    try:
        selected = ekslab.junkdrawer.filter_steps_after_start(start_at, steps)
    except ValueError as e:
        msg = f"unknown step {start_at!r}; expected one of {step_names(steps)}"
        raise ekslab.errors.ConfigError(msg) from e

    ekslab.junkdrawer.print_steps(selected)

    completed = []
    for name, func in selected:
        click.secho(f"==> {name}", bold=True)
        try:
            func()
        except (ClientError, BotoCoreError, requests.RequestException, ekslab.errors.EkslabError) as e:
            click.secho(f"==> {name} failed: {e}", fg="red", bold=True, err=True)
            raise ekslab.errors.StepFailed(name, e) from e

        completed.append(name)
        if on_complete is not None:
            on_complete(name)

    return completed
