"""Environment-backed secret store.

Secrets are looked up per project first, then globally, mirroring how a
single-tenant deployment usually only sets the global variables:

    GUARDIAN_SECRET_<PROJECT>_<KIND>   per-project, e.g. GUARDIAN_SECRET_PROJ_1_GITHUB_TOKEN
    <KIND>                             global fallback, e.g. GITHUB_TOKEN

The project id is upper-cased and every non-alphanumeric character becomes
an underscore. Values are never logged.
"""

import logging
import os
import re
from typing import Mapping

logger = logging.getLogger(__name__)


def _env_key(part: str) -> str:
    return re.sub(r"[^A-Z0-9]", "_", part.upper())


class EnvSecretStore:
    """SecretStore implementation reading from an environment mapping.

    Attributes:
        environ: Mapping to read from. Defaults to os.environ; tests pass a
            plain dict.
    """

    def __init__(self, environ: Mapping[str, str] | None = None) -> None:
        self.environ = environ if environ is not None else os.environ

    def get(self, project_id: str | None, kind: str) -> str | None:
        if project_id:
            scoped = self.environ.get(f"GUARDIAN_SECRET_{_env_key(project_id)}_{_env_key(kind)}")
            if scoped:
                return scoped

        value = self.environ.get(_env_key(kind))
        if not value:
            logger.debug("Secret '%s' not configured for project %s.", kind, project_id)
            return None
        return value
