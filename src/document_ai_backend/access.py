"""
Request identity and job ownership checks.

A request is either made by an authenticated principal (an API key that
resolves to an owner) or anonymously. Anonymous requests create guest
jobs, stored with the ``guest`` owner sentinel.

Guest jobs are readable by anyone who knows the job id. This is the
accepted trade-off for letting unauthenticated users poll and download
their own results; it is kept as-is pending product review.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional, Union

from .key_manager import KeyManager

if TYPE_CHECKING:
    from .job_manager import JobRecord

logger = logging.getLogger(__name__)

ANONYMOUS_OWNER = "guest"


@dataclass(frozen=True)
class Authenticated:
    principal_id: str

    @property
    def owner_id(self) -> str:
        return self.principal_id


@dataclass(frozen=True)
class Anonymous:
    @property
    def owner_id(self) -> str:
        return ANONYMOUS_OWNER


Identity = Union[Authenticated, Anonymous]

ANONYMOUS = Anonymous()


class InvalidCredentialsError(Exception):
    """An API key was presented but does not validate."""


class AccessResolver:
    def __init__(self, key_manager: KeyManager) -> None:
        self.key_manager = key_manager

    def resolve(self, api_key: Optional[str]) -> Identity:
        """
        Map the presented API key to an identity.

        No key means anonymous. A key that fails validation is an error
        rather than a silent downgrade to guest, so a typo never leaks a
        user's submissions into the guest space.
        """
        if not api_key:
            return ANONYMOUS
        record = self.key_manager.validate_key(api_key)
        if record is None:
            logger.warning("Rejected request with an invalid or revoked API key")
            raise InvalidCredentialsError("Invalid API key")
        return Authenticated(record.owner)

    def check_ownership(self, job: "JobRecord", identity: Identity) -> bool:
        return check_ownership(job, identity)


def is_guest_owner(owner_id: str) -> bool:
    return owner_id == ANONYMOUS_OWNER


def check_ownership(job: "JobRecord", identity: Identity) -> bool:
    return is_guest_owner(job.owner_id) or job.owner_id == identity.owner_id
