"""Retention policy lookup by role and transaction context."""

from pathlib import Path
from typing import List, Optional, Sequence, Union

import yaml
from pydantic import ValidationError as PydanticValidationError

from docvault.core.config import DEFAULT_POLICY_FILE
from docvault.core.exceptions import ConfigurationError
from docvault.schemas.vault import RetentionPolicy
from docvault.utils.logging import get_logger

LOGGER = get_logger(__name__)


def load_policies(path: Union[str, Path] = DEFAULT_POLICY_FILE) -> List[RetentionPolicy]:
    """Load the retention policy table from YAML.

    Raises:
        ConfigurationError: If the file is missing or malformed
    """
    path = Path(path)
    try:
        with open(path, "r") as f:
            raw = yaml.safe_load(f) or {}
        policies = [RetentionPolicy.model_validate(entry) for entry in raw.get("policies", [])]
    except (OSError, yaml.YAMLError, PydanticValidationError, AttributeError) as e:
        raise ConfigurationError(f"Invalid retention policy file {path}", original_error=e) from e

    LOGGER.info(f"Loaded {len(policies)} retention policies from {path}")
    return policies


def _accepts(allowed: Optional[Sequence[str]], value: Optional[str]) -> bool:
    return allowed is None or value in allowed


class RetentionPolicyResolver:
    """Deterministic policy selection over a fixed table.

    Holds no state besides the table, so the same inputs always give the
    same policy.
    """

    def __init__(self, policies: Sequence[RetentionPolicy]):
        self.policies = tuple(policies)

    @classmethod
    def from_file(cls, path: Union[str, Path] = DEFAULT_POLICY_FILE) -> "RetentionPolicyResolver":
        return cls(load_policies(path))

    def resolve(
        self,
        role: str,
        collateral_type: Optional[str] = None,
        request_type: Optional[str] = None,
        instrument_type: Optional[str] = None,
    ) -> Optional[RetentionPolicy]:
        """Pick the policy for a role and transaction context.

        Returns the first role entry whose collateral, request and instrument
        lists all accept the given values, else the first entry for the role,
        else None.
        """
        candidates = [p for p in self.policies if p.role == role]
        for policy in candidates:
            if (
                _accepts(policy.collateral_types, collateral_type)
                and _accepts(policy.request_types, request_type)
                and _accepts(policy.instrument_types, instrument_type)
            ):
                return policy
        return candidates[0] if candidates else None
