"""External system integrations (Kubernetes API, AWS Secrets Manager)."""
