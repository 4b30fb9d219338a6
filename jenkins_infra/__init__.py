"""CDK infrastructure for a Jenkins controller on ECS Fargate."""
