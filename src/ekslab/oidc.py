"""
Helpers for the IAM OIDC identity provider that lets in-cluster service
accounts assume IAM roles.

The thumbprint is taken from the root certificate presented by the issuer's
JWKS host, calculated by shelling out to `openssl`.

Ref: https://docs.aws.amazon.com/IAM/latest/UserGuide/id_roles_providers_create_oidc_verify-thumbprint.html
"""

from __future__ import annotations

import json
import re
import typing
import urllib.parse
import urllib.request

import click
from botocore.exceptions import ClientError

import ekslab
import ekslab.errors
import ekslab.shext

PEM_REGEX = re.compile(r"-----BEGIN CERTIFICATE-----.+?-----END CERTIFICATE-----", re.DOTALL)


def clean_issuer(url: str) -> str:
    return url.replace("https://", "")


def provider_arn(account_id: str, issuer: str) -> str:
    return f"arn:aws:iam::{account_id}:oidc-provider/{clean_issuer(issuer)}"


def get_network_location_for_oidc_endpoint(url: str) -> str:
    """Get the 'netloc' portion of a given `url`'s `jwks_uri`"""
    url = url.rstrip("/") + "/.well-known/openid-configuration"

    if not url.startswith(("http:", "https:")):
        msg = "URL must start with 'http:' or 'https:'"
        raise ValueError(msg)

    try:
        with urllib.request.urlopen(url) as response:  # noqa: S310
            return urllib.parse.urlparse(json.load(response)["jwks_uri"]).netloc
    except (OSError, ValueError, KeyError) as e:
        msg = f"could not read the OIDC discovery document at {url}: {e!r}"
        raise ekslab.errors.FetchError(msg) from e


def get_thumbprint(network_location: str) -> str:
    """
    Calculate the 'thumbprint' ('fingerprint') of the given `network_location`'s root
    certificate.
    """
    host = network_location.split(":", 1)[0]
    chain = ekslab.shext.tool(
        ["openssl", "s_client", "-servername", host, "-showcerts", "-connect", f"{host}:443"],
        input="",
    ).stdout

    certs = PEM_REGEX.findall(chain)
    if len(certs) == 0:
        msg = f"no certificates presented by {host!r}"
        raise ekslab.errors.EkslabError(msg)

    fingerprint = ekslab.shext.tool(
        ["openssl", "x509", "-fingerprint", "-sha1", "-noout"],
        input=certs[-1],
    ).stdout.strip()

    return fingerprint.split("=", 1)[-1].replace(":", "").lower()


def ensure_oidc_provider(
    iam: typing.Any,
    account_id: str,
    issuer: str,
    thumbprint: typing.Callable[[str], str] | None = None,
) -> str:
    """Create the cluster's IAM OIDC provider unless it already exists; return its ARN."""
    arn = provider_arn(account_id, issuer)

    try:
        iam.get_open_id_connect_provider(OpenIDConnectProviderArn=arn)
    except ClientError as e:
        if not ekslab.errors.is_kind(e, ekslab.errors.ErrorKind.NOT_FOUND):
            raise
    else:
        click.secho(f"OIDC provider {arn} already exists", fg="yellow")
        return arn

    thumbprint = thumbprint or (lambda url: get_thumbprint(get_network_location_for_oidc_endpoint(url)))

    try:
        iam.create_open_id_connect_provider(
            Url=issuer,
            ClientIDList=[ekslab.STS_AUDIENCE],
            ThumbprintList=[thumbprint(issuer)],
        )
    except ClientError as e:
        if not ekslab.errors.is_kind(e, ekslab.errors.ErrorKind.ALREADY_EXISTS):
            raise
        click.secho(f"OIDC provider {arn} already exists", fg="yellow")
    else:
        click.secho(f"Created OIDC provider {arn}", fg="green")

    return arn


def delete_oidc_provider(iam: typing.Any, arn: str) -> None:
    iam.delete_open_id_connect_provider(OpenIDConnectProviderArn=arn)
