"""External integrations: payment gateway, webhooks and the audit sink."""
