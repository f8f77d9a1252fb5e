from django.contrib.auth.models import AbstractUser
from django.db import models


class User(AbstractUser):
    """
    Account identity for the face-swap product.

    The primary key is the opaque user identity shared with the credit
    ledger; ``email`` is unique because payment-processor customers are
    linked back to users by email when no stored mapping exists.
    """
    email = models.EmailField(unique=True)
    display_name = models.CharField(max_length=150, blank=True, verbose_name="Display Name")
    avatar = models.URLField(blank=True, null=True, verbose_name="Avatar URL")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    USERNAME_FIELD = 'username'
    REQUIRED_FIELDS = ['email']

    class Meta:
        db_table = 'user'
        verbose_name = 'User'
        verbose_name_plural = 'Users'

    def __str__(self):
        return self.username
