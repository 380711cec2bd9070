"""
Per-environment web service on the shared ECS cluster: DNS zone and alias,
ECR image, target group, HTTPS listener rule, EC2 task definition and service.
The VPC, load balancer, cluster and listener are looked up, not created.
"""
from hashlib import sha1

from stackgraph.builder import Stack
from stackgraph.config import StackConfig


def _default_priority(env: str) -> int:
    # stable across runs so re-applying never reshuffles listener rules
    return int(sha1(env.encode("utf-8")).hexdigest(), 16) % 200 + 1


def build(config: StackConfig) -> Stack:
    stack = Stack(config.stack, config)
    env = config.require("env")
    alb_name = config.require("alb")
    cluster_name = config.get("cluster", "test-cluster")
    listener_arn = config.require("listener")
    cert_arn = config.get("cert", "arn:aws:acm:us-west-2:testcrt")
    api_url = config.get("NEXT_PUBLIC_API_URL", "http://localhost:3000/api")
    url = config.require("url")
    rule_priority = config.get_int("rulePriority", _default_priority(env))
    region = config.region or "us-west-2"
    tags = {"Client": "test"}

    # Shared infrastructure
    vpc = stack.read("aws:ec2/getVpc:getVpc", "vpc", {"id": config.get("vpcId", "vpc")})
    alb = stack.read("aws:lb/getLoadBalancer:getLoadBalancer", "alb", {"name": alb_name})
    cluster = stack.read("aws:ecs/getCluster:getCluster", "cluster", {"clusterName": cluster_name})
    listener_443 = stack.read(
        "aws:lb/getListener:getListener",
        "listener-443",
        {"arn": listener_arn, "loadBalancerArn": alb.arn, "port": 443},
    )

    zone = stack.declare("aws:route53/zone:Zone", f"test-{env}-zone", {"name": url}, protect=True)

    stack.declare(
        "aws:route53/record:Record",
        f"{env}-a-test",
        {
            "zoneId": zone["zoneId"],
            "name": "",
            "type": "A",
            "aliases": [
                {"evaluateTargetHealth": True, "name": alb["dnsName"], "zoneId": alb["zoneId"]},
            ],
        },
        protect=True,
    )

    repo = stack.declare(
        "aws:ecr/repository:Repository",
        f"test-web-{env}",
        {"tags": dict(tags, Name=f"test {env} Web Repo")},
        protect=True,
    )

    image = stack.declare(
        "awsx:ecr:Image",
        f"test-web-{env}-image",
        {
            "repositoryUrl": repo["repositoryUrl"],
            "dockerfile": f"../../../.docker/next.{env}.Dockerfile",
            "path": "../../../",
            "args": {
                "NEXT_PUBLIC_CLIENTVAR": "clientvar",
                "SERVICE_NAME": "web",
                "WORKSPACE": "web",
            },
            "env": {
                "NEXT_PUBLIC_NODE_ENV": "production",
                "NEXT_PUBLIC_PORT": "3000",
                "NEXT_PUBLIC_API_URL": api_url,
            },
        },
        protect=True,
    )

    target_group = stack.declare(
        "aws:lb/targetGroup:TargetGroup",
        f"test-{env}-tg",
        {
            "port": 80,
            "protocol": "HTTP",
            "targetType": "instance",
            "vpcId": vpc.id,
            "tags": dict(tags, Name=f"test Web {env} Target Group"),
        },
        protect=True,
    )

    stack.declare(
        "aws:alb/listenerCertificate:ListenerCertificate",
        f"test-{env}-cert",
        {"listenerArn": listener_443.arn, "certificateArn": cert_arn},
    )

    stack.declare(
        "aws:lb/listenerRule:ListenerRule",
        f"test-{env}-rule",
        {
            "actions": [{"type": "forward", "targetGroupArn": target_group.arn}],
            "conditions": [{"hostHeader": {"values": [f"test.{env}.com"]}}],
            "listenerArn": listener_443.arn,
            "priority": rule_priority,
            "tags": dict(tags, Name=f"test Web {env} Rule"),
        },
        protect=True,
    )

    task_definition = stack.declare(
        "awsx:ecs:EC2TaskDefinition",
        f"test-web-{env}-task",
        {
            "containers": {
                "app": {
                    "name": "app",
                    "image": image["imageUri"],
                    "cpu": 0,
                    "portMappings": [{"containerPort": 3000, "hostPort": 0, "protocol": "tcp"}],
                    "essential": True,
                    "environment": [],
                    "mountPoints": [],
                    "volumesFrom": [],
                    "secrets": [],
                    "logConfiguration": {
                        "logDriver": "awslogs",
                        "options": {
                            "awslogs-create-group": "true",
                            "awslogs-group": f"/ecs/test-web-{env}",
                            "awslogs-region": region,
                            "awslogs-stream-prefix": "ecs",
                        },
                    },
                },
            },
            "taskRole": {"roleArn": config.get("taskRoleArn", "arn:aws:iam::Role")},
            "executionRole": {"roleArn": config.get("executionRoleArn", "arn:aws:iam::Role")},
            "family": f"test-{env}",
            "networkMode": "bridge",
            "cpu": "128",
            "memory": "256",
            "tags": dict(tags, Name=f"test Web {env} Task"),
        },
    )

    stack.declare(
        "awsx:ecs:EC2Service",
        f"test-web-{env}-service",
        {
            "cluster": cluster.arn,
            "taskDefinition": task_definition["taskDefinition"]["family"],
            "propagateTags": "TASK_DEFINITION",
            "desiredCount": 1,
            "enableEcsManagedTags": True,
            "continueBeforeSteadyState": True,
            "deploymentCircuitBreaker": {"enable": True, "rollback": True},
            "loadBalancers": [
                {"targetGroupArn": target_group.arn, "containerName": "app", "containerPort": 3000},
            ],
        },
    )

    stack.export("imageUri", image["imageUri"])
    stack.export("zoneId", zone["zoneId"])
    stack.export("siteUrl", f"https://test.{env}.com")
    return stack
