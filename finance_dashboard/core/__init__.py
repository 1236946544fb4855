"""Core package: provides models, error types, settings, and shared utilities."""

from .errors import CredentialError, FinanceDashboardError, JobFailedError, JobFetchError, JobTimeoutError  # noqa: F401
from .settings import Settings, get_settings  # noqa: F401
from .utils import get_logger  # noqa: F401
from .models import Credential, Job, JobStep, Transaction  # noqa: F401, I001
