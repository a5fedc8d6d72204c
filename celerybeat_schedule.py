"""
Celery Beat Schedule Configuration

Defines periodic tasks that run on a schedule.
"""

from celery.schedules import crontab

# Schedule configuration
beat_schedule = {
    # Trials ending within TRIAL_REMINDER_LEAD_DAYS get one reminder - hourly sweep
    'send-trial-reminders': {
        'task': 'tasks.send_trial_reminders',
        'schedule': crontab(minute=5),
    },
    # Lapsed trials / cancel-at-period-end rows drop to the default plan
    'expire-lapsed-subscriptions': {
        'task': 'tasks.expire_lapsed_subscriptions',
        'schedule': crontab(minute='*/15'),
    },
    # Cached credit balances vs. ledger sums - nightly at 3 AM UTC
    'reconcile-credit-balances': {
        'task': 'tasks.reconcile_credit_balances',
        'schedule': crontab(hour=3, minute=0),
    },
}
