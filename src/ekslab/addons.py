from __future__ import annotations

import typing

import click
import requests
import yaml

import ekslab
import ekslab.errors
import ekslab.shext

if typing.TYPE_CHECKING:
    import pathlib

    import ekslab.config

EKS_CHARTS_REPO = "https://aws.github.io/eks-charts"
LBC_CHART = "eks/aws-load-balancer-controller"
LBC_CRDS = "github.com/aws/eks-charts/stable/aws-load-balancer-controller//crds?ref=master"
ROLE_ARN_ANNOTATION = "eks.amazonaws.com/role-arn"
EXTERNAL_DNS_HOSTNAME_ANNOTATION = "external-dns.alpha.kubernetes.io/hostname"
DEMO_APP_NAME = "nginx-test"
DEMO_APP_INDEX = (
    'echo "<h1>EKS DNS Test</h1><p>Pod: $POD_NAME</p><p>IP: $POD_IP</p><p>Hostname: $(hostname)</p>"'
    " > /html/index.html"
)


def service_account(name: str, role_arn: str, namespace: str = ekslab.KUBE_SYSTEM_NAMESPACE) -> dict[str, typing.Any]:
    return {
        "apiVersion": "v1",
        "kind": "ServiceAccount",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "annotations": {ROLE_ARN_ANNOTATION: role_arn},
        },
    }


def render_external_dns(cfg: ekslab.config.ClusterConfig, role_arn: str) -> list[dict[str, typing.Any]]:
    name = ekslab.EXTERNAL_DNS

    return [
        service_account(name, role_arn),
        {
            "apiVersion": "rbac.authorization.k8s.io/v1",
            "kind": "ClusterRole",
            "metadata": {"name": name},
            "rules": [
                {"apiGroups": [""], "resources": ["services", "endpoints", "pods"], "verbs": ["get", "watch", "list"]},
                {
                    "apiGroups": ["extensions", "networking.k8s.io"],
                    "resources": ["ingresses"],
                    "verbs": ["get", "watch", "list"],
                },
                {"apiGroups": [""], "resources": ["nodes"], "verbs": ["list", "watch"]},
            ],
        },
        {
            "apiVersion": "rbac.authorization.k8s.io/v1",
            "kind": "ClusterRoleBinding",
            "metadata": {"name": f"{name}-viewer"},
            "roleRef": {"apiGroup": "rbac.authorization.k8s.io", "kind": "ClusterRole", "name": name},
            "subjects": [{"kind": "ServiceAccount", "name": name, "namespace": ekslab.KUBE_SYSTEM_NAMESPACE}],
        },
        {
            "apiVersion": "apps/v1",
            "kind": "Deployment",
            "metadata": {"name": name, "namespace": ekslab.KUBE_SYSTEM_NAMESPACE},
            "spec": {
                "strategy": {"type": "Recreate"},
                "selector": {"matchLabels": {"app": name}},
                "template": {
                    "metadata": {"labels": {"app": name}},
                    "spec": {
                        "serviceAccountName": name,
                        "containers": [
                            {
                                "name": name,
                                "image": cfg.external_dns_image,
                                "args": [
                                    "--source=service",
                                    "--source=ingress",
                                    f"--domain-filter={cfg.domain_name}",
                                    "--provider=aws",
                                    "--aws-zone-type=public",
                                    "--registry=txt",
                                    f"--txt-owner-id={cfg.cluster_name}",
                                ],
                            }
                        ],
                        "securityContext": {"fsGroup": 65534},
                    },
                },
            },
        },
    ]


def _pod_env() -> list[dict[str, typing.Any]]:
    return [
        {"name": "POD_NAME", "valueFrom": {"fieldRef": {"fieldPath": "metadata.name"}}},
        {"name": "POD_IP", "valueFrom": {"fieldRef": {"fieldPath": "status.podIP"}}},
    ]


def render_demo_app(cfg: ekslab.config.ClusterConfig) -> list[dict[str, typing.Any]]:
    labels = {"app": DEMO_APP_NAME}

    return [
        {
            "apiVersion": "apps/v1",
            "kind": "Deployment",
            "metadata": {"name": DEMO_APP_NAME, "namespace": ekslab.DEFAULT_NAMESPACE},
            "spec": {
                "replicas": 2,
                "selector": {"matchLabels": labels},
                "template": {
                    "metadata": {"labels": labels},
                    "spec": {
                        "containers": [
                            {
                                "name": "nginx",
                                "image": cfg.demo_app_image,
                                "ports": [{"containerPort": 80}],
                                "env": _pod_env(),
                                "volumeMounts": [{"name": "html", "mountPath": "/usr/share/nginx/html"}],
                            }
                        ],
                        "initContainers": [
                            {
                                "name": "html-generator",
                                "image": "busybox",
                                "command": ["sh", "-c", DEMO_APP_INDEX],
                                "env": _pod_env(),
                                "volumeMounts": [{"name": "html", "mountPath": "/html"}],
                            }
                        ],
                        "volumes": [{"name": "html", "emptyDir": {}}],
                    },
                },
            },
        },
        {
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": {
                "name": f"{DEMO_APP_NAME}-service",
                "namespace": ekslab.DEFAULT_NAMESPACE,
                "annotations": {
                    EXTERNAL_DNS_HOSTNAME_ANNOTATION: cfg.hostname,
                    "service.beta.kubernetes.io/aws-load-balancer-type": "nlb",
                },
            },
            "spec": {
                "type": "LoadBalancer",
                "selector": labels,
                "ports": [{"port": 80, "targetPort": 80, "protocol": "TCP"}],
            },
        },
        {
            "apiVersion": "networking.k8s.io/v1",
            "kind": "Ingress",
            "metadata": {
                "name": f"{DEMO_APP_NAME}-ingress",
                "namespace": ekslab.DEFAULT_NAMESPACE,
                "annotations": {
                    "alb.ingress.kubernetes.io/scheme": "internet-facing",
                    "alb.ingress.kubernetes.io/target-type": "ip",
                    EXTERNAL_DNS_HOSTNAME_ANNOTATION: cfg.ingress_hostname,
                },
            },
            "spec": {
                "ingressClassName": "alb",
                "rules": [
                    {
                        "host": cfg.ingress_hostname,
                        "http": {
                            "paths": [
                                {
                                    "path": "/",
                                    "pathType": "Prefix",
                                    "backend": {
                                        "service": {"name": f"{DEMO_APP_NAME}-service", "port": {"number": 80}}
                                    },
                                }
                            ]
                        },
                    }
                ],
            },
        },
    ]


def write_documents(path: pathlib.Path, docs: list[dict[str, typing.Any]]) -> pathlib.Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump_all(docs, default_flow_style=False, sort_keys=False))

    return path


def apply(path: pathlib.Path, kubeconfig: pathlib.Path) -> None:
    ekslab.shext.kubectl(["apply", "-f", str(path)], kubeconfig)
    click.secho(f"Applied {path.name}", fg="green")


def delete(path: pathlib.Path, kubeconfig: pathlib.Path) -> bool:
    """Delete the objects in a rendered manifest; returns False when the file is absent."""
    if not path.exists():
        click.secho(f"{path.name} not found, skipping", fg="yellow")
        return False

    ekslab.shext.kubectl(["delete", "-f", str(path), "--ignore-not-found=true"], kubeconfig)
    click.secho(f"Deleted objects from {path.name}", fg="green")

    return True


def download_load_balancer_controller_policy(url: str) -> dict[str, typing.Any]:
    try:
        resp = requests.get(url, headers={"Accept": "application/json"}, timeout=(5, 30))
        resp.raise_for_status()

        return resp.json()
    except requests.RequestException as e:
        msg = f"could not fetch load balancer controller policy from {url}: {e}"
        raise ekslab.errors.FetchError(msg) from e


def install_load_balancer_controller(
    cfg: ekslab.config.ClusterConfig,
    vpc_id: str,
    kubeconfig: pathlib.Path,
) -> None:
    ekslab.shext.helm(["repo", "add", "eks", EKS_CHARTS_REPO, "--force-update"], kubeconfig)
    ekslab.shext.helm(["repo", "update"], kubeconfig)
    ekslab.shext.kubectl(["apply", "-k", LBC_CRDS], kubeconfig)
    ekslab.shext.helm(
        [
            "upgrade",
            "--install",
            ekslab.AWS_LOAD_BALANCER_CONTROLLER,
            LBC_CHART,
            "--namespace",
            ekslab.KUBE_SYSTEM_NAMESPACE,
            "--set",
            f"clusterName={cfg.cluster_name}",
            "--set",
            "serviceAccount.create=false",
            "--set",
            f"serviceAccount.name={ekslab.AWS_LOAD_BALANCER_CONTROLLER}",
            "--set",
            f"region={cfg.region}",
            "--set",
            f"vpcId={vpc_id}",
        ],
        kubeconfig,
    )
    click.secho("Installed AWS Load Balancer Controller", fg="green")


def helm_release_installed(name: str, namespace: str, kubeconfig: pathlib.Path) -> bool:
    releases = ekslab.shext.shj(
        ["helm", "--kubeconfig", str(kubeconfig), "list", "--namespace", namespace, "--output", "json"],
    )

    return any(release.get("name") == name for release in releases or [])


def uninstall_load_balancer_controller(kubeconfig: pathlib.Path) -> bool:
    if not helm_release_installed(ekslab.AWS_LOAD_BALANCER_CONTROLLER, ekslab.KUBE_SYSTEM_NAMESPACE, kubeconfig):
        click.secho("AWS Load Balancer Controller not installed", fg="yellow")
        return False

    ekslab.shext.helm(
        ["uninstall", ekslab.AWS_LOAD_BALANCER_CONTROLLER, "--namespace", ekslab.KUBE_SYSTEM_NAMESPACE],
        kubeconfig,
    )
    click.secho("Uninstalled AWS Load Balancer Controller", fg="green")

    return True
