from stackgraph.programs import common, ec2_instance, ecs_ec2_task

PROGRAMS = {
    "common": common.build,
    "ec2-instance": ec2_instance.build,
    "ecs-ec2-task": ecs_ec2_task.build,
}

DESCRIPTIONS = {
    "common": "VPC, load balancer and EC2-backed ECS cluster",
    "ec2-instance": "Standalone EC2 web server with ECR image, elastic IP and DNS record",
    "ecs-ec2-task": "Per-environment ECS service on the shared cluster",
}
