from retention.sweeper import RetentionSweeper

__all__ = ["RetentionSweeper"]
