"""Engine options read from ``settings.WORKFLOW`` with defaults."""
from zoneinfo import ZoneInfo

from django.conf import settings

DEFAULTS = {
    'TIME_ZONE': 'Asia/Colombo',
    'AUTOSTART_INTERVAL': 30,
    'COMPLETION_POLICY': 'primary',
}

COMPLETION_POLICIES = ('primary', 'all')


def get(name):
    return getattr(settings, 'WORKFLOW', {}).get(name, DEFAULTS[name])


def organization_tz():
    return ZoneInfo(get('TIME_ZONE'))


def completion_policy():
    policy = get('COMPLETION_POLICY')
    if policy not in COMPLETION_POLICIES:
        raise ValueError(f"Unknown completion policy {policy!r}, expected one of {COMPLETION_POLICIES}")
    return policy
