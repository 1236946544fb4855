"""Finance Dashboard API: bank-linking flow, job polling and spending aggregation for a personal-finance dashboard."""
