"""Services package: token provider, aggregation API client, status aggregator and aggregation views."""
