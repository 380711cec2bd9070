"""
Single EC2 instance running the web image from ECR, with its own VPC,
public subnet, IAM instance profile, elastic IP and DNS record.
"""
import json

from stackgraph.builder import Stack
from stackgraph.config import StackConfig
from stackgraph.models.output import Output

TRUST_POLICY = {
    "Version": "2012-10-17",
    "Statement": [
        {
            "Effect": "Allow",
            "Principal": {"Service": "ec2.amazonaws.com"},
            "Action": "sts:AssumeRole",
        },
    ],
}

ECR_PULL_POLICY = {
    "Version": "2012-10-17",
    "Statement": [
        {
            "Sid": "AllowAll",
            "Effect": "Allow",
            "Action": [
                "ecr:GetDownloadUrlForLayer",
                "ecr:BatchGetImage",
                "ecr:BatchCheckLayerAvailability",
                "ecr:GetAuthorizationToken",
            ],
            "Resource": "*",
        },
    ],
}

REPOSITORY_POLICY = {
    "Version": "2012-10-17",
    "Statement": [
        {
            "Sid": "",
            "Effect": "Allow",
            "Principal": "*",
            "Action": [
                "ecr:GetDownloadUrlForLayer",
                "ecr:BatchGetImage",
                "ecr:BatchCheckLayerAvailability",
            ],
        },
    ],
}

_USER_DATA = """#!/bin/bash
sudo su
yum update -y
yum install -y nginx
yum install -y docker
service docker start
usermod -a -G docker ec2-user
aws ecr get-login-password --region {region} | docker login --username AWS --password-stdin {registry}
docker pull {repository_url}:latest
docker run -d -p 3000:3000 {repository_url}:latest
"""


def build(config: StackConfig) -> Stack:
    stack = Stack(config.stack, config)
    instance_type = config.get("instanceType", "m6g.micro")
    vpc_cidr = config.get("vpcNetworkCidr", "10.0.0.0/16")
    region = config.region or "us-west-2"
    zone_name = config.get("hostedZone", "testsite.com")
    ssh_cidr = config.get("sshCidr", "myIP")

    ami = stack.read(
        "aws:ec2/getAmi:getAmi",
        "ami",
        {
            "filters": [{"name": "name", "values": [config.get("amiName", "AMI")]}],
            "owners": ["amazon"],
            "mostRecent": True,
        },
    )

    ecr_repo = stack.declare("aws:ecr/repository:Repository", "web", {}, protect=True)

    stack.declare(
        "awsx:ecr:Image",
        "web-image",
        {
            "repositoryUrl": ecr_repo["repositoryUrl"],
            "dockerfile": "../.docker/next.Dockerfile",
            "path": "../",
            "args": {
                "NEXT_PUBLIC_CLIENTVAR": "clientvar",
                "SERVICE_NAME": "web",
                "WORKSPACE": "web",
            },
            "env": {},
        },
        protect=True,
    )

    user_data = ecr_repo["repositoryUrl"].apply(
        lambda url: _USER_DATA.format(
            region=region,
            registry=url.split("/")[0],
            repository_url=url,
        )
    )

    vpc = stack.declare(
        "aws:ec2/vpc:Vpc",
        "vpc",
        {"cidrBlock": vpc_cidr, "enableDnsHostnames": True, "enableDnsSupport": True},
    )

    # Instances launched here get a public IP address
    public_subnet = stack.declare(
        "aws:ec2/subnet:Subnet",
        "public-subnet",
        {
            "vpcId": vpc.id,
            "availabilityZone": f"{region}a",
            "cidrBlock": config.get("subnetCidr", "10.0.0.0/24"),
            "mapPublicIpOnLaunch": True,
        },
    )

    gateway = stack.declare("aws:ec2/internetGateway:InternetGateway", "gateway", {"vpcId": vpc.id})

    route_table = stack.declare(
        "aws:ec2/routeTable:RouteTable",
        "routeTable",
        {"vpcId": vpc.id, "routes": [{"cidrBlock": "0.0.0.0/0", "gatewayId": gateway.id}]},
    )

    stack.declare(
        "aws:ec2/routeTableAssociation:RouteTableAssociation",
        "routeTableAssociation",
        {"subnetId": public_subnet.id, "routeTableId": route_table.id},
    )

    key_pair = stack.declare(
        "aws:ec2/keyPair:KeyPair",
        "myKeyPair",
        {"publicKey": config.get_secret("publicKey", "")},
    )

    sec_group = stack.declare(
        "aws:ec2/securityGroup:SecurityGroup",
        "secGroup",
        {
            "description": "Enable HTTP access",
            "vpcId": vpc.id,
            "ingress": [
                {"fromPort": 80, "toPort": 80, "protocol": "tcp", "cidrBlocks": ["0.0.0.0/0"]},
                {"fromPort": 443, "toPort": 443, "protocol": "tcp", "cidrBlocks": ["0.0.0.0/0"]},
            ],
            "egress": [
                {"fromPort": 0, "toPort": 0, "protocol": "-1", "cidrBlocks": ["0.0.0.0/0"]},
            ],
        },
    )

    # SSH from trusted addresses only
    stack.declare(
        "aws:ec2/securityGroupRule:SecurityGroupRule",
        "mySecurityGroupRule",
        {
            "type": "ingress",
            "fromPort": 22,
            "toPort": 22,
            "protocol": "tcp",
            "securityGroupId": sec_group.id,
            "cidrBlocks": [ssh_cidr],
        },
    )

    role = stack.declare(
        "aws:iam/role:Role",
        "ec2InstanceRole",
        {"assumeRolePolicy": json.dumps(TRUST_POLICY)},
    )

    stack.declare(
        "aws:iam/rolePolicy:RolePolicy",
        "rolePolicy",
        {"role": role["name"], "policy": json.dumps(ECR_PULL_POLICY)},
    )

    stack.declare(
        "aws:iam/rolePolicyAttachment:RolePolicyAttachment",
        "rolePolicyAttachment",
        {"role": role["name"], "policyArn": "arn:aws:iam::aws:policy/AmazonSSMReadOnlyAccess"},
    )

    stack.declare(
        "aws:ecr/repositoryPolicy:RepositoryPolicy",
        "web-repo-policy",
        {"repository": ecr_repo["name"], "policy": json.dumps(REPOSITORY_POLICY)},
    )

    instance_profile = stack.declare(
        "aws:iam/instanceProfile:InstanceProfile",
        "ec2InstanceProfile",
        {"role": role["name"]},
    )

    server = stack.declare(
        "aws:ec2/instance:Instance",
        "server",
        {
            "instanceType": instance_type,
            "subnetId": public_subnet.id,
            "vpcSecurityGroupIds": [sec_group.id],
            "userData": user_data,
            "keyName": key_pair["keyName"],
            "iamInstanceProfile": instance_profile["name"],
            "ami": ami.id,
        },
    )

    eip = stack.declare("aws:ec2/eip:Eip", "web-ip", {"instance": server.id})

    zone = stack.read("aws:route53/getZone:getZone", "hosted-zone", {"name": zone_name})

    stack.declare(
        "aws:route53/record:Record",
        "record",
        {
            "name": "",
            "zoneId": zone["zoneId"],
            "type": "A",
            "ttl": 300,
            "records": [eip["publicIp"]],
        },
    )

    stack.export("ip", eip["publicIp"])
    stack.export("hostname", server["publicDns"])
    stack.export("serverUrl", Output.concat("http://", server["publicDns"]))
    return stack
