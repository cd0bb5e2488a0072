from __future__ import annotations

import dataclasses
import pathlib
import sys
import typing

import click
from botocore.exceptions import BotoCoreError, ClientError

import ekslab
import ekslab.config
import ekslab.cross_account
import ekslab.errors
import ekslab.manifest
import ekslab.paths
import ekslab.provision
import ekslab.steps
import ekslab.teardown


@dataclasses.dataclass
class Context:
    paths: ekslab.paths.Paths
    config_path: pathlib.Path

    def cluster_config(self) -> ekslab.config.ClusterConfig:
        return ekslab.config.load_cluster_config(self.config_path)

    def cross_account_config(self) -> ekslab.config.CrossAccountConfig:
        return ekslab.config.load_cross_account_config(self.config_path)


def _fail(msg: str) -> typing.NoReturn:
    click.secho(msg, fg="red", bold=True, err=True)
    sys.exit(1)


@click.group()
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=pathlib.Path),
    default=None,
    help="YAML config file (default: ekslab.yaml in the working directory)",
)
@click.option(
    "--root",
    type=click.Path(file_okay=False, path_type=pathlib.Path),
    default=None,
    help="Directory holding the manifest and rendered files",
)
@click.pass_context
def cli(ctx: click.Context, config_path: pathlib.Path | None, root: pathlib.Path | None):
    """Provision, tear down and check access to a throwaway EKS cluster."""
    paths = ekslab.paths.Paths(root)
    ctx.obj = Context(paths=paths, config_path=config_path or paths.config)


@cli.command()
@click.option("--start-at", default=None, help="Resume provisioning at this step")
@click.option("--list-steps", is_flag=True, help="Print the step names and exit")
@click.pass_obj
def provision(obj: Context, start_at: str | None, list_steps: bool):
    """Create the VPC, IAM roles, cluster, node group and add-ons."""
    try:
        cfg = obj.cluster_config()
        provisioner = ekslab.provision.Provisioner(cfg, ekslab.aws_session(region=cfg.region), paths=obj.paths)

        if list_steps:
            for name in ekslab.steps.step_names(provisioner.steps()):
                click.echo(name)
            return

        provisioner.run(start_at=start_at)
    except ekslab.errors.StepFailed as e:
        _fail(f"Provisioning stopped at step {e.step!r}; rerun with --start-at {e.step} after fixing the cause")
    except BotoCoreError as e:
        _fail(str(e))
    except ekslab.errors.EkslabError as e:
        _fail(str(e))


@cli.command()
@click.option("--cluster-name", default=None, help="Tear down this cluster even without a manifest")
@click.option("--region", default=None, help="Region of the cluster; must match the manifest when there is one")
@click.pass_obj
def teardown(obj: Context, cluster_name: str | None, region: str | None):
    """Delete everything provision created, in reverse order."""
    try:
        cfg = obj.cluster_config()
        overrides = {k: v for k, v in {"cluster_name": cluster_name, "region": region}.items() if v is not None}
        if overrides:
            cfg = dataclasses.replace(cfg, **overrides)

        report = ekslab.teardown.teardown(
            cfg,
            ekslab.aws_session(region=cfg.region),
            paths=obj.paths,
            cluster_name=cluster_name,
            region=region,
        )
    except ClientError as e:
        _fail(f"{ekslab.errors.error_code(e)}: {ekslab.errors.error_message(e)}")
    except BotoCoreError as e:
        _fail(str(e))
    except ekslab.errors.EkslabError as e:
        _fail(str(e))

    if not report.ok:
        _fail(f"Teardown incomplete: {len(report.failed)} item(s) failed")

    click.secho("Teardown complete", fg="green", bold=True)


@cli.group()
def manifest():
    """Inspect the resource manifest."""


@manifest.command("show")
@click.pass_obj
def manifest_show(obj: Context):
    try:
        m = ekslab.manifest.load(obj.paths.manifest)
    except ekslab.errors.ManifestError as e:
        _fail(str(e))

    for key, value in m.to_dict().items():
        click.echo(f"{key}={value}")


@cli.group("cross-account")
def cross_account():
    """Set up and test cross-account role assumption."""


@cross_account.command("setup")
@click.option("--keep-policy-file", is_flag=True, help=f"Keep {ekslab.ASSUME_ROLE_POLICY_FILENAME} after the run")
@click.pass_obj
def cross_account_setup(obj: Context, keep_policy_file: bool):
    """Create the cross-account role in the trusting account."""
    try:
        cfg = obj.cross_account_config()
        result = ekslab.cross_account.setup(cfg, ekslab.aws_session(), paths=obj.paths, keep_policy_file=keep_policy_file)
    except ClientError as e:
        _fail(f"{ekslab.errors.error_code(e)}: {ekslab.errors.error_message(e)}")
    except BotoCoreError as e:
        _fail(str(e))
    except ekslab.errors.EkslabError as e:
        _fail(str(e))

    click.secho(f"\nCreated {result.role_arn}", fg="green", bold=True)


@cross_account.command("test")
@click.option("--role-arn", required=True)
@click.option("--external-id", required=True)
@click.option("--mfa-serial", default=None)
@click.option("--token-code", default=None)
@click.option("--duration", type=int, default=None, help="Session duration in seconds")
@click.pass_obj
def cross_account_test(
    obj: Context,
    role_arn: str,
    external_id: str,
    mfa_serial: str | None,
    token_code: str | None,
    duration: int | None,
):
    """Assume the cross-account role and report the resulting identity."""
    try:
        cfg = obj.cross_account_config()
        result = ekslab.cross_account.check_access(
            ekslab.aws_session(),
            role_arn,
            external_id,
            duration_seconds=duration or cfg.test_session_duration,
            mfa_serial=mfa_serial,
            token_code=token_code,
        )
    except ClientError:
        sys.exit(1)
    except BotoCoreError as e:
        _fail(str(e))
    except ekslab.errors.EkslabError as e:
        _fail(str(e))

    if not result.ok:
        sys.exit(1)

    click.secho("Cross-account access works", fg="green", bold=True)


if __name__ == "__main__":
    cli()
