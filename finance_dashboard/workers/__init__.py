"""Workers package: background polling of aggregation jobs."""
