from __future__ import annotations

import typing

import click
from botocore.exceptions import ClientError

import ekslab
import ekslab.errors

ELBV2_DESCRIBE_TAGS_BATCH = 20


def tag_specifications(resource_type: str, name: str, extra: dict[str, str] | None = None) -> list[dict[str, typing.Any]]:
    tags = {str(ekslab.TagKeys.NAME): name} | (extra or {})

    return [
        {
            "ResourceType": resource_type,
            "Tags": [{"Key": k, "Value": v} for k, v in tags.items()],
        }
    ]


def create_vpc(ec2: typing.Any, cluster_name: str, cidr: str) -> str:
    vpc_id = ec2.create_vpc(
        CidrBlock=cidr,
        TagSpecifications=tag_specifications("vpc", f"{cluster_name}-vpc"),
    )["Vpc"]["VpcId"]
    click.secho(f"Created VPC: {vpc_id}", fg="green")

    # EKS needs both; they can only be set one attribute per call
    ec2.modify_vpc_attribute(VpcId=vpc_id, EnableDnsHostnames={"Value": True})
    ec2.modify_vpc_attribute(VpcId=vpc_id, EnableDnsSupport={"Value": True})

    return vpc_id


def create_internet_gateway(ec2: typing.Any, cluster_name: str, vpc_id: str) -> str:
    igw_id = ec2.create_internet_gateway(
        TagSpecifications=tag_specifications("internet-gateway", f"{cluster_name}-igw"),
    )["InternetGateway"]["InternetGatewayId"]
    click.secho(f"Created Internet Gateway: {igw_id}", fg="green")

    ec2.attach_internet_gateway(InternetGatewayId=igw_id, VpcId=vpc_id)

    return igw_id


def availability_zones(ec2: typing.Any, count: int) -> list[str]:
    zones = [
        zone["ZoneName"]
        for zone in ec2.describe_availability_zones(
            Filters=[{"Name": "state", "Values": ["available"]}],
        ).get("AvailabilityZones", [])
    ]

    if len(zones) < count:
        msg = f"need {count} availability zones but the region only offers {len(zones)}"
        raise ekslab.errors.ConfigError(msg)

    return zones[:count]


def create_subnets(
    ec2: typing.Any,
    cluster_name: str,
    vpc_id: str,
    cidrs: typing.Sequence[str],
) -> tuple[str, ...]:
    subnet_ids = []
    for i, (cidr, zone) in enumerate(zip(cidrs, availability_zones(ec2, len(cidrs)), strict=True), start=1):
        subnet_id = ec2.create_subnet(
            VpcId=vpc_id,
            CidrBlock=cidr,
            AvailabilityZone=zone,
            TagSpecifications=tag_specifications(
                "subnet",
                f"{cluster_name}-subnet-{i}",
                {str(ekslab.TagKeys.ELB_ROLE): "1"},
            ),
        )["Subnet"]["SubnetId"]
        click.secho(f"Created Subnet {i}: {subnet_id} in {zone}", fg="green")

        ec2.modify_subnet_attribute(SubnetId=subnet_id, MapPublicIpOnLaunch={"Value": True})
        subnet_ids.append(subnet_id)

    return tuple(subnet_ids)


def create_route_table(
    ec2: typing.Any,
    cluster_name: str,
    vpc_id: str,
    igw_id: str,
    subnet_ids: typing.Iterable[str],
) -> str:
    route_table_id = ec2.create_route_table(
        VpcId=vpc_id,
        TagSpecifications=tag_specifications("route-table", f"{cluster_name}-rt"),
    )["RouteTable"]["RouteTableId"]
    click.secho(f"Created Route Table: {route_table_id}", fg="green")

    ec2.create_route(RouteTableId=route_table_id, DestinationCidrBlock=ekslab.ANYWHERE_CIDR, GatewayId=igw_id)

    for subnet_id in subnet_ids:
        ec2.associate_route_table(SubnetId=subnet_id, RouteTableId=route_table_id)

    return route_table_id


def create_security_group(
    ec2: typing.Any,
    cluster_name: str,
    vpc_id: str,
    ports: typing.Iterable[int],
) -> str:
    group_id = ec2.create_security_group(
        GroupName=f"{cluster_name}-sg",
        Description=f"Security group for EKS cluster {cluster_name}",
        VpcId=vpc_id,
        TagSpecifications=tag_specifications("security-group", f"{cluster_name}-sg"),
    )["GroupId"]
    click.secho(f"Created Security Group: {group_id}", fg="green")

    ec2.authorize_security_group_ingress(
        GroupId=group_id,
        IpPermissions=[
            {
                "IpProtocol": "tcp",
                "FromPort": port,
                "ToPort": port,
                "IpRanges": [{"CidrIp": ekslab.ANYWHERE_CIDR}],
            }
            for port in ports
        ],
    )

    return group_id


def route_table_associations(ec2: typing.Any, route_table_id: str) -> list[str]:
    """Non-main association ids of a route table; an absent table has none."""
    if route_table_id == "":
        return []

    try:
        tables = ec2.describe_route_tables(RouteTableIds=[route_table_id]).get("RouteTables", [])
    except ClientError as e:
        if ekslab.errors.is_kind(e, ekslab.errors.ErrorKind.NOT_FOUND):
            return []
        raise

    return [
        assoc["RouteTableAssociationId"]
        for table in tables
        for assoc in table.get("Associations", [])
        if not assoc.get("Main", False)
    ]


def network_interfaces_in_subnet(ec2: typing.Any, subnet_id: str) -> list[str]:
    response = ec2.describe_network_interfaces(Filters=[{"Name": "subnet-id", "Values": [subnet_id]}])

    return [eni["NetworkInterfaceId"] for eni in response.get("NetworkInterfaces", [])]


def cluster_load_balancers(elbv2: typing.Any, cluster_name: str, vpc_id: str = "") -> list[str]:
    """
    ARNs of load balancers that belong to the cluster: those inside its VPC or
    tagged for it by the load balancer controller or the in-tree service
    controller. Names are not used; one cluster name can prefix another.
    """
    matched: list[str] = []
    unmatched: list[str] = []

    for page in elbv2.get_paginator("describe_load_balancers").paginate():
        for lb in page.get("LoadBalancers", []):
            if vpc_id != "" and lb.get("VpcId") == vpc_id:
                matched.append(lb["LoadBalancerArn"])
            else:
                unmatched.append(lb["LoadBalancerArn"])

    ownership_tags = {
        (ekslab.TagKeys.kubernetes_cluster(cluster_name), "owned"),
        (str(ekslab.TagKeys.ELBV2_CLUSTER), cluster_name),
    }

    for i in range(0, len(unmatched), ELBV2_DESCRIBE_TAGS_BATCH):
        batch = unmatched[i : i + ELBV2_DESCRIBE_TAGS_BATCH]
        for desc in elbv2.describe_tags(ResourceArns=batch).get("TagDescriptions", []):
            if any((tag["Key"], tag["Value"]) in ownership_tags for tag in desc.get("Tags", [])):
                matched.append(desc["ResourceArn"])

    return matched
