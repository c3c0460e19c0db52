"""
Backup replication worker components.

Contains the fixed-delay retry policy, the replicator that copies objects
from primary storage to the backup bucket, the queue-draining worker pool and
the SQS Lambda entry point.
"""
