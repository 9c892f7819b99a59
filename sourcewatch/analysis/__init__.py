from sourcewatch.analysis.relevance import ContentAnalyzer

__all__ = ["ContentAnalyzer"]
