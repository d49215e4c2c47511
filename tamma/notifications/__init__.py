"""Notification channels used to deliver escalation alerts.

Variants:
    - CLIChannel: Writes styled alerts to the operator's terminal
    - WebhookChannel: POSTs JSON alerts with httpx
    - EmailChannel: Sends alerts over SMTP
"""
