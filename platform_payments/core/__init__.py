"""Core payment processing: amounts, retries, refunds, subscriptions and analytics."""
