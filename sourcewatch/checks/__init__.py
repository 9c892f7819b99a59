from sourcewatch.checks.tiered import TierRun, TieredChecker

__all__ = ["TierRun", "TieredChecker"]
