from django.db import models
from django.contrib.auth.models import AbstractUser, UserManager as BaseUserManager
import uuid

SYSTEM_USERNAME = 'system'


class Role(models.TextChoices):
    ADMIN = 'admin', 'Admin'
    TEAM_LEAD = 'team-lead', 'Team Lead'
    ACCOUNT_MANAGER = 'account-manager', 'Account Manager'
    HR = 'hr', 'HR'
    USER = 'user', 'User'
    SYSTEM = 'system', 'System'


PRIVILEGED_ROLES = {Role.ADMIN, Role.TEAM_LEAD, Role.SYSTEM}


class UserManager(BaseUserManager):
    def system_actor(self):
        """Return the account scheduled transitions are attributed to."""
        user, _ = self.get_or_create(
            username=SYSTEM_USERNAME,
            defaults={'role': Role.SYSTEM, 'is_active': True},
        )
        return user


class User(AbstractUser):
    uuid = models.UUIDField(default=uuid.uuid4, unique=True, editable=False)
    role = models.CharField(max_length=20, choices=Role.choices, default=Role.USER)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    deleted_at = models.DateTimeField(null=True, blank=True)  # Soft deletes

    objects = UserManager()

    class Meta:
        ordering = ['created_at']

    @property
    def is_privileged(self):
        return self.role in PRIVILEGED_ROLES

    @property
    def display_name(self):
        return self.get_full_name() or self.username

    def __str__(self):
        return self.display_name
