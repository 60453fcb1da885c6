"""Post-hoc and periodic analysis of collected metrics."""

from .bottlenecks import RECOMMENDATIONS, BottleneckDetector, check_performance_targets, load_recommendations

__all__ = ["RECOMMENDATIONS", "BottleneckDetector", "check_performance_targets", "load_recommendations"]
