"""Shared pytest fixtures for ekslab tests.

This module provides common fixtures used across test files:
- ekslab_root: Sets EKSLAB_ROOT environment variable
- fake_cloud: In-memory stand-in for the EC2, EKS, ELBv2, IAM and STS APIs
- session: boto3.Session look-alike handing out fake_cloud clients
- waiter: Waiter driven by a fake clock, so nothing really sleeps
- tools: Records kubectl/helm/openssl invocations instead of running them
"""

import datetime
import itertools
import pathlib
import subprocess
import typing

import pytest
from botocore.exceptions import ClientError

import ekslab.config
import ekslab.paths
import ekslab.shext
import ekslab.waiting

ACCOUNT_ID = "123456789012"
CALLER_ARN = f"arn:aws:iam::{ACCOUNT_ID}:user/tester"


def client_error(code: str, operation: str = "Operation", message: str = "") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": message or code}}, operation)


# ============================================================================
# Environment Setup Fixtures
# ============================================================================


@pytest.fixture
def ekslab_root(monkeypatch: pytest.MonkeyPatch, tmp_path: pathlib.Path) -> pathlib.Path:
    """Set EKSLAB_ROOT environment variable to a temporary directory.

    Usage:
        def test_something(ekslab_root):
            paths = Paths()
            assert paths.root == ekslab_root
    """
    monkeypatch.setenv("EKSLAB_ROOT", str(tmp_path))
    monkeypatch.delenv("EKSLAB_CONFIG", raising=False)
    return tmp_path


@pytest.fixture
def paths(ekslab_root: pathlib.Path) -> ekslab.paths.Paths:
    return ekslab.paths.Paths()


@pytest.fixture
def cluster_config() -> ekslab.config.ClusterConfig:
    return ekslab.config.ClusterConfig(cluster_name="test-cluster", node_group_name="test-nodes")


# ============================================================================
# Fake AWS
# ============================================================================


class FakeWaiter:
    def __init__(self, name: str, calls: list):
        self.name = name
        self.calls = calls

    def wait(self, **kwargs):
        self.calls.append((self.name, kwargs))


class FakePaginator:
    def __init__(self, pages: typing.Callable[..., list[dict]]):
        self._pages = pages

    def paginate(self, **kwargs):
        return iter(self._pages(**kwargs))


class FakeCloud:
    """Just enough EC2/EKS/ELBv2/IAM/STS behaviour to provision and tear down.

    Deletes enforce the same dependency rules as AWS (a VPC with subnets left in
    it raises DependencyViolation, a role with attached policies raises
    DeleteConflict, and so on) and missing resources raise the NotFound codes
    the real APIs use.
    """

    def __init__(self):
        self._ids = itertools.count(1)
        self.calls: list[tuple[str, str, dict]] = []
        self.waits: list[tuple[str, dict]] = []

        self.vpcs: dict[str, dict] = {}
        self.internet_gateways: dict[str, str] = {}
        self.subnets: dict[str, str] = {}
        self.route_tables: dict[str, dict] = {}
        self.security_groups: dict[str, str] = {}
        self.network_interfaces: dict[str, list[str]] = {}
        self.load_balancers: list[dict] = []
        self.lb_tags: dict[str, list[dict]] = {}

        self.clusters: dict[str, dict] = {}
        self.nodegroups: dict[tuple[str, str], dict] = {}

        self.roles: dict[str, dict] = {}
        self.policies: dict[str, dict] = {}
        self.oidc_providers: set[str] = set()

        self.caller_arn = CALLER_ARN

        # operation name -> errors raised by its next calls, one per call
        self.failures: dict[str, list[ClientError]] = {}

    def new_id(self, prefix: str) -> str:
        return f"{prefix}-{next(self._ids):08x}"

    def record(self, service: str, op: str, kwargs: dict) -> None:
        self.calls.append((service, op, kwargs))

    def fail(self, op: str, code: str, times: int = 1) -> None:
        self.failures.setdefault(op, []).extend(client_error(code, op) for _ in range(times))

    def ops(self, service: str | None = None) -> list[str]:
        return [op for svc, op, _ in self.calls if service is None or svc == service]

    def client(self, name: str) -> typing.Any:
        return {
            "ec2": FakeEC2,
            "eks": FakeEKS,
            "elbv2": FakeELBv2,
            "iam": FakeIAM,
            "sts": FakeSTS,
        }[name](self)

    def is_empty(self) -> bool:
        return not any(
            [
                self.vpcs,
                self.internet_gateways,
                self.subnets,
                self.route_tables,
                self.security_groups,
                self.clusters,
                self.nodegroups,
                self.roles,
                self.policies,
                self.oidc_providers,
            ]
        )


class _FakeService:
    service = ""

    def __init__(self, cloud: FakeCloud):
        self.cloud = cloud

    def __getattribute__(self, name: str) -> typing.Any:
        attr = object.__getattribute__(self, name)
        if callable(attr) and not name.startswith("_") and name not in ("get_waiter", "get_paginator"):

            def recorded(**kwargs):
                self.cloud.record(type(self).service, name, kwargs)
                pending = self.cloud.failures.get(name)
                if pending:
                    raise pending.pop(0)
                return attr(**kwargs)

            return recorded
        return attr

    def get_waiter(self, name: str) -> FakeWaiter:
        return FakeWaiter(name, self.cloud.waits)


class FakeEC2(_FakeService):
    service = "ec2"

    def create_vpc(self, CidrBlock, TagSpecifications=None):
        vpc_id = self.cloud.new_id("vpc")
        self.cloud.vpcs[vpc_id] = {"CidrBlock": CidrBlock}
        return {"Vpc": {"VpcId": vpc_id}}

    def modify_vpc_attribute(self, VpcId, **kwargs):
        return {}

    def create_internet_gateway(self, TagSpecifications=None):
        igw_id = self.cloud.new_id("igw")
        self.cloud.internet_gateways[igw_id] = ""
        return {"InternetGateway": {"InternetGatewayId": igw_id}}

    def attach_internet_gateway(self, InternetGatewayId, VpcId):
        self.cloud.internet_gateways[InternetGatewayId] = VpcId

    def describe_availability_zones(self, Filters=None):
        return {"AvailabilityZones": [{"ZoneName": "us-west-1a"}, {"ZoneName": "us-west-1c"}]}

    def create_subnet(self, VpcId, CidrBlock, AvailabilityZone, TagSpecifications=None):
        subnet_id = self.cloud.new_id("subnet")
        self.cloud.subnets[subnet_id] = VpcId
        return {"Subnet": {"SubnetId": subnet_id}}

    def modify_subnet_attribute(self, SubnetId, **kwargs):
        return {}

    def create_route_table(self, VpcId, TagSpecifications=None):
        rtb_id = self.cloud.new_id("rtb")
        self.cloud.route_tables[rtb_id] = {"vpc": VpcId, "associations": {}, "routes": set()}
        return {"RouteTable": {"RouteTableId": rtb_id}}

    def create_route(self, RouteTableId, DestinationCidrBlock, GatewayId):
        self.cloud.route_tables[RouteTableId]["routes"].add(DestinationCidrBlock)

    def associate_route_table(self, SubnetId, RouteTableId):
        assoc_id = self.cloud.new_id("rtbassoc")
        self.cloud.route_tables[RouteTableId]["associations"][assoc_id] = SubnetId
        return {"AssociationId": assoc_id}

    def create_security_group(self, GroupName, Description, VpcId, TagSpecifications=None):
        group_id = self.cloud.new_id("sg")
        self.cloud.security_groups[group_id] = VpcId
        return {"GroupId": group_id}

    def authorize_security_group_ingress(self, GroupId, IpPermissions):
        return {}

    def describe_route_tables(self, RouteTableIds):
        tables = []
        for rtb_id in RouteTableIds:
            if rtb_id not in self.cloud.route_tables:
                raise client_error("InvalidRouteTableID.NotFound", "DescribeRouteTables")
            tables.append(
                {
                    "RouteTableId": rtb_id,
                    "Associations": [
                        {"RouteTableAssociationId": a, "SubnetId": s, "Main": False}
                        for a, s in self.cloud.route_tables[rtb_id]["associations"].items()
                    ],
                }
            )
        return {"RouteTables": tables}

    def describe_network_interfaces(self, Filters):
        subnet_id = Filters[0]["Values"][0]
        return {
            "NetworkInterfaces": [
                {"NetworkInterfaceId": eni} for eni in self.cloud.network_interfaces.get(subnet_id, [])
            ]
        }

    def disassociate_route_table(self, AssociationId):
        for table in self.cloud.route_tables.values():
            if AssociationId in table["associations"]:
                del table["associations"][AssociationId]
                return {}
        raise client_error("InvalidAssociationID.NotFound", "DisassociateRouteTable")

    def delete_route(self, RouteTableId, DestinationCidrBlock):
        table = self.cloud.route_tables.get(RouteTableId)
        if table is None or DestinationCidrBlock not in table["routes"]:
            raise client_error("InvalidRoute.NotFound", "DeleteRoute")
        table["routes"].discard(DestinationCidrBlock)

    def delete_route_table(self, RouteTableId):
        table = self.cloud.route_tables.get(RouteTableId)
        if table is None:
            raise client_error("InvalidRouteTableID.NotFound", "DeleteRouteTable")
        if table["associations"]:
            raise client_error("DependencyViolation", "DeleteRouteTable")
        del self.cloud.route_tables[RouteTableId]

    def delete_subnet(self, SubnetId):
        if SubnetId not in self.cloud.subnets:
            raise client_error("InvalidSubnetID.NotFound", "DeleteSubnet")
        if self.cloud.network_interfaces.get(SubnetId):
            raise client_error("DependencyViolation", "DeleteSubnet")
        if any(SubnetId in t["associations"].values() for t in self.cloud.route_tables.values()):
            raise client_error("DependencyViolation", "DeleteSubnet")
        del self.cloud.subnets[SubnetId]

    def delete_security_group(self, GroupId):
        if GroupId not in self.cloud.security_groups:
            raise client_error("InvalidGroup.NotFound", "DeleteSecurityGroup")
        del self.cloud.security_groups[GroupId]

    def detach_internet_gateway(self, InternetGatewayId, VpcId):
        if InternetGatewayId not in self.cloud.internet_gateways:
            raise client_error("InvalidInternetGatewayID.NotFound", "DetachInternetGateway")
        if self.cloud.internet_gateways[InternetGatewayId] != VpcId:
            raise client_error("Gateway.NotAttached", "DetachInternetGateway")
        self.cloud.internet_gateways[InternetGatewayId] = ""

    def delete_internet_gateway(self, InternetGatewayId):
        if InternetGatewayId not in self.cloud.internet_gateways:
            raise client_error("InvalidInternetGatewayID.NotFound", "DeleteInternetGateway")
        if self.cloud.internet_gateways[InternetGatewayId] != "":
            raise client_error("DependencyViolation", "DeleteInternetGateway")
        del self.cloud.internet_gateways[InternetGatewayId]

    def delete_vpc(self, VpcId):
        if VpcId not in self.cloud.vpcs:
            raise client_error("InvalidVpcID.NotFound", "DeleteVpc")
        in_use = (
            VpcId in self.cloud.subnets.values()
            or VpcId in self.cloud.internet_gateways.values()
            or VpcId in self.cloud.security_groups.values()
            or any(t["vpc"] == VpcId for t in self.cloud.route_tables.values())
        )
        if in_use:
            raise client_error("DependencyViolation", "DeleteVpc")
        del self.cloud.vpcs[VpcId]


class FakeEKS(_FakeService):
    service = "eks"

    def create_cluster(self, name, **kwargs):
        self.cloud.clusters[name] = {
            "name": name,
            "status": "ACTIVE",
            "endpoint": f"https://{name}.eks.example.com",
            "certificateAuthority": {"data": "Q0EK"},
            "identity": {"oidc": {"issuer": f"https://oidc.eks.us-west-1.amazonaws.com/id/{name.upper()}"}},
        }
        return {"cluster": self.cloud.clusters[name]}

    def describe_cluster(self, name):
        if name not in self.cloud.clusters:
            raise client_error("ResourceNotFoundException", "DescribeCluster")
        return {"cluster": self.cloud.clusters[name]}

    def create_nodegroup(self, clusterName, nodegroupName, **kwargs):
        self.cloud.nodegroups[(clusterName, nodegroupName)] = kwargs
        return {}

    def delete_nodegroup(self, clusterName, nodegroupName):
        if (clusterName, nodegroupName) not in self.cloud.nodegroups:
            raise client_error("ResourceNotFoundException", "DeleteNodegroup")
        del self.cloud.nodegroups[(clusterName, nodegroupName)]

    def delete_cluster(self, name):
        if name not in self.cloud.clusters:
            raise client_error("ResourceNotFoundException", "DeleteCluster")
        if any(cluster == name for cluster, _ in self.cloud.nodegroups):
            raise client_error("ResourceInUseException", "DeleteCluster")
        del self.cloud.clusters[name]


class FakeELBv2(_FakeService):
    service = "elbv2"

    def get_paginator(self, name: str) -> FakePaginator:
        assert name == "describe_load_balancers"
        return FakePaginator(lambda: [{"LoadBalancers": list(self.cloud.load_balancers)}])

    def describe_tags(self, ResourceArns):
        return {
            "TagDescriptions": [{"ResourceArn": arn, "Tags": self.cloud.lb_tags.get(arn, [])} for arn in ResourceArns]
        }


class FakeIAM(_FakeService):
    service = "iam"

    def _role(self, name: str) -> dict:
        if name not in self.cloud.roles:
            raise client_error("NoSuchEntity", "GetRole")
        return self.cloud.roles[name]

    def create_role(self, RoleName, AssumeRolePolicyDocument, Description="", MaxSessionDuration=3600):
        if RoleName in self.cloud.roles:
            raise client_error("EntityAlreadyExists", "CreateRole")
        arn = f"arn:aws:iam::{ACCOUNT_ID}:role/{RoleName}"
        self.cloud.roles[RoleName] = {
            "Arn": arn,
            "trust": AssumeRolePolicyDocument,
            "attached": [],
            "inline": [],
            "MaxSessionDuration": MaxSessionDuration,
        }
        return {"Role": {"RoleName": RoleName, "Arn": arn}}

    def get_role(self, RoleName):
        return {"Role": self._role(RoleName)}

    def attach_role_policy(self, RoleName, PolicyArn):
        self._role(RoleName)["attached"].append(PolicyArn)

    def detach_role_policy(self, RoleName, PolicyArn):
        self._role(RoleName)["attached"].remove(PolicyArn)

    def list_role_policies(self, RoleName):
        return {"PolicyNames": list(self._role(RoleName)["inline"])}

    def delete_role_policy(self, RoleName, PolicyName):
        self._role(RoleName)["inline"].remove(PolicyName)

    def delete_role(self, RoleName):
        role = self._role(RoleName)
        if role["attached"] or role["inline"]:
            raise client_error("DeleteConflict", "DeleteRole")
        del self.cloud.roles[RoleName]

    def get_paginator(self, name: str) -> FakePaginator:
        assert name == "list_attached_role_policies"

        def pages(RoleName):
            self.cloud.record("iam", "list_attached_role_policies", {"RoleName": RoleName})
            return [{"AttachedPolicies": [{"PolicyArn": arn} for arn in self._role(RoleName)["attached"]]}]

        return FakePaginator(pages)

    def create_policy(self, PolicyName, PolicyDocument):
        arn = f"arn:aws:iam::{ACCOUNT_ID}:policy/{PolicyName}"
        if arn in self.cloud.policies:
            raise client_error("EntityAlreadyExists", "CreatePolicy")
        self.cloud.policies[arn] = {"document": PolicyDocument, "versions": ["v1"]}
        return {"Policy": {"Arn": arn}}

    def list_policy_versions(self, PolicyArn):
        if PolicyArn not in self.cloud.policies:
            raise client_error("NoSuchEntity", "ListPolicyVersions")
        versions = self.cloud.policies[PolicyArn]["versions"]
        return {
            "Versions": [{"VersionId": v, "IsDefaultVersion": i == len(versions) - 1} for i, v in enumerate(versions)]
        }

    def delete_policy_version(self, PolicyArn, VersionId):
        self.cloud.policies[PolicyArn]["versions"].remove(VersionId)

    def delete_policy(self, PolicyArn):
        if PolicyArn not in self.cloud.policies:
            raise client_error("NoSuchEntity", "DeletePolicy")
        if any(PolicyArn in role["attached"] for role in self.cloud.roles.values()):
            raise client_error("DeleteConflict", "DeletePolicy")
        del self.cloud.policies[PolicyArn]

    def get_open_id_connect_provider(self, OpenIDConnectProviderArn):
        if OpenIDConnectProviderArn not in self.cloud.oidc_providers:
            raise client_error("NoSuchEntity", "GetOpenIDConnectProvider")
        return {}

    def create_open_id_connect_provider(self, Url, ClientIDList, ThumbprintList):
        arn = f"arn:aws:iam::{ACCOUNT_ID}:oidc-provider/{Url.removeprefix('https://')}"
        if arn in self.cloud.oidc_providers:
            raise client_error("EntityAlreadyExists", "CreateOpenIDConnectProvider")
        self.cloud.oidc_providers.add(arn)
        return {"OpenIDConnectProviderArn": arn}

    def delete_open_id_connect_provider(self, OpenIDConnectProviderArn):
        if OpenIDConnectProviderArn not in self.cloud.oidc_providers:
            raise client_error("NoSuchEntity", "DeleteOpenIDConnectProvider")
        self.cloud.oidc_providers.discard(OpenIDConnectProviderArn)


class FakeSTS(_FakeService):
    service = "sts"

    def get_caller_identity(self):
        arn = self.cloud.caller_arn
        return {"UserId": "AIDAEXAMPLE", "Account": arn.split(":")[4], "Arn": arn}

    def assume_role(self, RoleArn, RoleSessionName, **kwargs):
        account = RoleArn.split(":")[4]
        role_name = RoleArn.rsplit("/", 1)[-1]
        return {
            "Credentials": {
                "AccessKeyId": "ASIAEXAMPLE",
                "SecretAccessKey": "secret",
                "SessionToken": "token",
                "Expiration": datetime.datetime(2030, 1, 1, tzinfo=datetime.UTC),
            },
            "AssumedRoleUser": {
                "AssumedRoleId": f"AROAEXAMPLE:{RoleSessionName}",
                "Arn": f"arn:aws:sts::{account}:assumed-role/{role_name}/{RoleSessionName}",
            },
        }


class FakeSession:
    def __init__(self, cloud: FakeCloud, region_name: str = "us-west-1"):
        self.cloud = cloud
        self.region_name = region_name

    def client(self, name: str, **kwargs) -> typing.Any:
        return self.cloud.client(name)


@pytest.fixture
def fake_cloud() -> FakeCloud:
    return FakeCloud()


@pytest.fixture
def session(fake_cloud: FakeCloud) -> FakeSession:
    return FakeSession(fake_cloud)


@pytest.fixture
def make_client_error() -> typing.Callable[..., ClientError]:
    return client_error


# ============================================================================
# Time and tools
# ============================================================================


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def waiter(clock: FakeClock) -> ekslab.waiting.Waiter:
    return ekslab.waiting.Waiter(
        backoff=ekslab.waiting.Backoff(timeout=120.0, initial_delay=1.0, max_delay=10.0),
        sleep=clock.sleep,
        clock=clock,
    )


@pytest.fixture
def tools(monkeypatch: pytest.MonkeyPatch) -> list[list[str]]:
    """Replace `ekslab.shext.tool` so kubectl/helm/openssl are never launched.

    Returns the list of commands that would have run. `helm list` reports no
    releases.
    """
    commands: list[list[str]] = []

    def fake_tool(command: list[str], **kwargs) -> subprocess.CompletedProcess[str]:
        commands.append(list(command))
        stdout = "[]" if command[0] == "helm" and "list" in command else ""
        return subprocess.CompletedProcess(command, 0, stdout=stdout, stderr="")

    monkeypatch.setattr(ekslab.shext, "tool", fake_tool)
    return commands
