from famtracker.stats.aggregator import StatisticsAggregator, summarize_reports

__all__ = ["StatisticsAggregator", "summarize_reports"]
