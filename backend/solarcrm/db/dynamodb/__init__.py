"""DynamoDB single-table access.

- boto3 client/resource configuration (timeouts, adaptive retries)
- bounded app-layer retry for transient failures
- encrypted cursor tokens for paged queries
- typed errors rendered as problem-details responses
"""
