from django.db import models
from django.utils.translation import gettext_lazy as _


class UserRole(models.TextChoices):
    """Roles recognised by phase transitions and escalation paths."""

    ADMIN = 'ADMIN', _('Administrator')
    ATTORNEY = 'ATTORNEY', _('Attorney')
    PARALEGAL = 'PARALEGAL', _('Paralegal')
    ASSISTANT = 'ASSISTANT', _('Assistant')
    ARCHIVIST = 'ARCHIVIST', _('Archivist')

    @classmethod
    def get_case_managers(cls):
        """Roles allowed to move a case between phases."""
        return [cls.ATTORNEY, cls.ADMIN]
