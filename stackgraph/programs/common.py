"""
Shared infrastructure: VPC, load balancer, and an ECS cluster backed by an
EC2 auto scaling group. Everything here is protected.
"""
import base64

from stackgraph.builder import Stack
from stackgraph.config import StackConfig

_ALL_IPV4 = ["0.0.0.0/0"]
_ALL_IPV6 = ["::/0"]

_EGRESS_ALL = [
    {"fromPort": 0, "toPort": 0, "protocol": "-1", "cidrBlocks": _ALL_IPV4},
]


def _user_data(cluster_name: str) -> str:
    script = f"#!/bin/bash\necho ECS_CLUSTER={cluster_name} >> /etc/ecs/ecs.config"
    return base64.b64encode(script.encode("utf-8")).decode("ascii")


def build(config: StackConfig) -> Stack:
    stack = Stack(config.stack, config)
    domain = config.get("domain", "testsite.com")

    vpc = stack.declare("awsx:ec2:Vpc", "vpc", {}, protect=True)

    # For SSH access when debugging
    key_pair = stack.declare(
        "aws:ec2/keyPair:KeyPair",
        "myKeyPair",
        {"publicKey": config.get_secret("publicKey", "")},
        protect=True,
    )

    alb_sg = stack.declare(
        "aws:ec2/securityGroup:SecurityGroup",
        "lb",
        {
            "description": "Enable HTTP access",
            "vpcId": vpc["vpcId"],
            "ingress": [
                {"fromPort": 80, "toPort": 80, "protocol": "tcp",
                 "cidrBlocks": _ALL_IPV4, "ipv6CidrBlocks": _ALL_IPV6},
                {"fromPort": 443, "toPort": 443, "protocol": "tcp",
                 "cidrBlocks": _ALL_IPV4, "ipv6CidrBlocks": _ALL_IPV6},
            ],
            "egress": _EGRESS_ALL,
        },
        protect=True,
    )

    # All traffic from the load balancer's group
    default_sg = stack.declare(
        "aws:ec2/securityGroup:SecurityGroup",
        "default",
        {
            "description": "Enable HTTP access",
            "vpcId": vpc["vpcId"],
            "ingress": [
                {"fromPort": 0, "toPort": 0, "protocol": "-1", "securityGroups": [alb_sg.id]},
            ],
            "egress": _EGRESS_ALL,
        },
        protect=True,
    )

    certificate = stack.read(
        "aws:acm/getCertificate:getCertificate",
        "certificate",
        {"domain": domain, "mostRecent": True},
    )

    alb = stack.declare(
        "awsx:lb:ApplicationLoadBalancer",
        "alb",
        {
            "internal": False,
            "idleTimeout": 1800,
            "securityGroups": [default_sg.id, alb_sg.id],
            "subnetIds": vpc["publicSubnetIds"],
            "listener": {
                "port": 80,
                "protocol": "HTTP",
                "defaultActions": [{
                    "type": "redirect",
                    "redirect": {"protocol": "HTTPS", "statusCode": "HTTP_301", "port": "443"},
                }],
            },
        },
        protect=True,
    )

    listener_443 = stack.declare(
        "aws:lb/listener:Listener",
        "sxsyd-listener-443",
        {
            "loadBalancerArn": alb["loadBalancer"]["arn"],
            "port": 443,
            "protocol": "HTTPS",
            "certificateArn": certificate.arn,
            "defaultActions": [{
                "type": "fixed-response",
                "fixedResponse": {
                    "contentType": "application/json",
                    "messageBody": '{ "error": "Service Unavailable" }',
                    "statusCode": "503",
                },
            }],
        },
        protect=True,
    )

    log_group = stack.declare("aws:cloudwatch/logGroup:LogGroup", "clusterLogGroup", {}, protect=True)

    cluster = stack.declare(
        "aws:ecs/cluster:Cluster",
        "dev",
        {
            "configuration": {
                "executeCommandConfiguration": {
                    "logging": "OVERRIDE",
                    "logConfiguration": {
                        "cloudWatchEncryptionEnabled": True,
                        "cloudWatchLogGroupName": log_group["name"],
                    },
                },
            },
            "settings": [{"name": "containerInsights", "value": "enabled"}],
        },
        protect=True,
    )

    launch_template = stack.declare(
        "aws:ec2/launchTemplate:LaunchTemplate",
        "launch-template",
        {
            "imageId": config.get("imageId", ""),
            "instanceType": config.get("instanceType", ""),
            "vpcSecurityGroupIds": [alb_sg.id, default_sg.id],
            "iamInstanceProfile": {"name": config.get("instanceProfile", "")},
            "keyName": key_pair["keyName"],
            "userData": cluster["name"].apply(_user_data),
        },
        protect=True,
    )

    scaling_group = stack.declare(
        "aws:autoscaling/group:Group",
        "scaling-group",
        {
            "vpcZoneIdentifiers": vpc["privateSubnetIds"],
            "desiredCapacity": 1,
            "maxSize": 1,
            "minSize": 1,
            "maxInstanceLifetime": 604800,
            "terminationPolicies": ["AllocationStrategy", "OldestInstance"],
            "defaultInstanceWarmup": 60,
            "defaultCooldown": 120,
            "protectFromScaleIn": True,
            "launchTemplate": {"id": launch_template.id, "version": "$Latest"},
        },
        protect=True,
    )

    capacity_provider = stack.declare(
        "aws:ecs/capacityProvider:CapacityProvider",
        "cap-provider",
        {
            "autoScalingGroupProvider": {
                "autoScalingGroupArn": scaling_group.arn,
                "managedTerminationProtection": "ENABLED",
                "managedScaling": {
                    "maximumScalingStepSize": 1000,
                    "minimumScalingStepSize": 1,
                    "status": "ENABLED",
                    "targetCapacity": 1,
                },
            },
        },
        protect=True,
    )

    # Sometimes has to be removed and recreated to attach to the cluster properly
    stack.declare(
        "aws:ecs/clusterCapacityProviders:ClusterCapacityProviders",
        "cluster-capacity-providers",
        {
            "clusterName": cluster["name"],
            "capacityProviders": [capacity_provider["name"]],
            "defaultCapacityProviderStrategies": [
                {"base": 0, "weight": 1, "capacityProvider": capacity_provider["name"]},
            ],
        },
        protect=True,
    )

    stack.export("vpcId", vpc["vpcId"])
    stack.export("albDnsName", alb["loadBalancer"]["dnsName"])
    stack.export("listenerArn", listener_443.arn)
    stack.export("clusterName", cluster["name"])
    return stack
