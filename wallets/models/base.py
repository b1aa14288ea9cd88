from django.db import models


class BaseModel(models.Model):
    """
    Abstract base model providing the creation timestamp.

    Ledger rows are immutable, so only models that can change add their
    own `updated_at`.
    """

    created_at = models.DateTimeField(auto_now_add=True, editable=False)

    class Meta:
        abstract = True
        ordering = ["-created_at"]
