"""Storage service layer: quota cache, backup producer and file flows."""
