"""
Adapter layer for the storage service.

Contains the job queue (local/SQS), the backup status store (direct database
or internal HTTP API) and the CloudWatch metrics emitter. Each adapter picks
its implementation from the deployment mode.
"""
