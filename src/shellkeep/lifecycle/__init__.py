from shellkeep.lifecycle.cleanup import CleanupScheduler, CleanupStats, SessionRegistry

__all__ = ["CleanupScheduler", "CleanupStats", "SessionRegistry"]
