from __future__ import annotations

import os
import pathlib

import ekslab


class Paths:
    def __init__(self, root: pathlib.Path | str | None = None):
        self._root = pathlib.Path(root) if root is not None else None

    @property
    def root(self) -> pathlib.Path:
        """Return the working directory holding the manifest and rendered files.

        An explicit root wins, then the EKSLAB_ROOT environment variable, then
        the current working directory.
        """
        if self._root is not None:
            return self._root

        if "EKSLAB_ROOT" in os.environ:
            return pathlib.Path(os.environ["EKSLAB_ROOT"])

        return pathlib.Path.cwd()

    @property
    def config(self) -> pathlib.Path:
        if "EKSLAB_CONFIG" in os.environ:
            return pathlib.Path(os.environ["EKSLAB_CONFIG"])

        return self.root / "ekslab.yaml"

    @property
    def manifest(self) -> pathlib.Path:
        return self.root / ekslab.MANIFEST_FILENAME

    @property
    def kubeconfig(self) -> pathlib.Path:
        return self.root / ekslab.KUBECONFIG_FILENAME

    @property
    def external_dns(self) -> pathlib.Path:
        return self.root / ekslab.EXTERNAL_DNS_FILENAME

    @property
    def demo_app(self) -> pathlib.Path:
        return self.root / ekslab.DEMO_APP_FILENAME

    @property
    def load_balancer_controller_service_account(self) -> pathlib.Path:
        return self.root / ekslab.LBC_SERVICE_ACCOUNT_FILENAME

    @property
    def assume_role_policy(self) -> pathlib.Path:
        return self.root / ekslab.ASSUME_ROLE_POLICY_FILENAME

    def rendered_files(self) -> list[pathlib.Path]:
        return [
            self.demo_app,
            self.external_dns,
            self.load_balancer_controller_service_account,
            self.kubeconfig,
        ]
