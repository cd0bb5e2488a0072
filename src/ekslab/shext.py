from __future__ import annotations

import functools
import json
import subprocess
import typing

import ekslab.errors

if typing.TYPE_CHECKING:
    import pathlib

sh = functools.partial(
    subprocess.run,
    check=True,
    capture_output=True,
    text=True,
)


def tool(command: list[str], **kwargs) -> subprocess.CompletedProcess[str]:
    """Run an external tool, converting launch and exit failures into `ToolError`."""
    try:
        return sh(command, **kwargs)
    except FileNotFoundError as e:
        raise ekslab.errors.ToolError(command, None, f"{command[0]} is not installed or not on PATH") from e
    except subprocess.CalledProcessError as e:
        raise ekslab.errors.ToolError(command, e.returncode, e.stderr or "") from e


def shj(command: list[str], **kwargs) -> typing.Any:
    return json.loads(tool(command, **kwargs).stdout)


def kubectl(args: list[str], kubeconfig: pathlib.Path, **kwargs) -> subprocess.CompletedProcess[str]:
    return tool(["kubectl", "--kubeconfig", str(kubeconfig), *args], **kwargs)


def helm(args: list[str], kubeconfig: pathlib.Path, **kwargs) -> subprocess.CompletedProcess[str]:
    return tool(["helm", "--kubeconfig", str(kubeconfig), *args], **kwargs)
