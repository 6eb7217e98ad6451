"""Email provider client, subscriber lookups, the issue delivery worker and periodic maintenance."""
