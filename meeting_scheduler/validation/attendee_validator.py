"""Attendee email validation with backend verification and a local fallback."""

import re
from typing import Dict, List, Optional

from pydantic import BaseModel

from meeting_scheduler.config import settings
from meeting_scheduler.llm.errors import BackendError
from meeting_scheduler.router.ai_router import RoutingError
from meeting_scheduler.utils.logging_utils import StructuredLogger
from meeting_scheduler.utils.ttl_cache import TTLCache

BATCH_SIZE = 5

EMAIL_FORMAT = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")


class EmailValidationResult(BaseModel):
    """Outcome of validating one address."""
    email: str
    is_valid: bool
    exists: bool = False
    trusted: bool = False
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    error: Optional[str] = None


def is_valid_email_format(email: str) -> bool:
    """Regex format check that also rejects dots at the edges of the local part."""
    if not email or not EMAIL_FORMAT.match(email):
        return False
    local_part = email.split("@")[0]
    if ".." in email or local_part.startswith(".") or local_part.endswith("."):
        return False
    return True


def names_from_email(email: str):
    """Guess (first, last) from a local part such as ``jane.doe``."""
    local_part = email.split("@")[0]
    parts = [p for p in re.split(r"[._-]", local_part.split("+")[0]) if p and not p.isdigit()]
    if not parts:
        return None, None
    first = parts[0].capitalize()
    last = parts[-1].capitalize() if len(parts) > 1 else None
    return first, last


class AttendeeValidator:
    """Validates attendee emails, caching backend-verified results."""

    def __init__(
        self,
        ai_service=None,
        ttl_seconds: Optional[float] = None,
        max_size: Optional[int] = None,
        cache: Optional[TTLCache] = None
    ):
        self.ai_service = ai_service
        self.cache: TTLCache[EmailValidationResult] = cache or TTLCache(
            max_size or settings.attendee_cache_max_size,
            ttl_seconds or settings.attendee_cache_ttl_seconds,
        )
        self.total_validations = 0
        self.fallback_validations = 0
        self.logger = StructuredLogger(__name__)

    def _format_result(self, email: str, error: Optional[str] = None) -> EmailValidationResult:
        valid = is_valid_email_format(email)
        first, last = names_from_email(email) if valid else (None, None)
        return EmailValidationResult(
            email=email,
            is_valid=valid,
            exists=False,
            trusted=False,
            first_name=first,
            last_name=last,
            error=error if valid else "Invalid email format",
        )

    def _from_backend(self, email: str, verified: Optional[Dict]) -> EmailValidationResult:
        if verified is None:
            return self._format_result(email, error="Address was not verified")
        valid = bool(verified.get("valid")) and is_valid_email_format(email)
        guessed_first, guessed_last = names_from_email(email) if valid else (None, None)
        return EmailValidationResult(
            email=email,
            is_valid=valid,
            exists=valid,
            trusted=valid and bool(verified.get("trusted")),
            first_name=verified.get("first_name") or guessed_first,
            last_name=verified.get("last_name") or guessed_last,
            error=None if valid else "Email address could not be verified",
        )

    async def _verify(self, emails: List[str], correlation_id: Optional[str] = None) -> List[EmailValidationResult]:
        """Verify uncached, well-formed addresses. Fallback results are not cached."""
        results: Dict[str, EmailValidationResult] = {}
        to_verify = []
        for email in emails:
            if not is_valid_email_format(email):
                results[email] = self._format_result(email)
            else:
                to_verify.append(email)

        if to_verify and self.ai_service is not None:
            try:
                verified = await self.ai_service.verify_attendees(to_verify, correlation_id=correlation_id)
            except (RoutingError, BackendError) as e:
                self.logger.warning(
                    "Attendee verification unavailable, using format check",
                    correlation_id=correlation_id,
                    count=len(to_verify),
                    error=str(e),
                )
                self.fallback_validations += len(to_verify)
                for email in to_verify:
                    results[email] = self._format_result(email)
            else:
                by_email = {item["email"].lower(): item for item in verified}
                for email in to_verify:
                    result = self._from_backend(email, by_email.get(email.lower()))
                    results[email] = result
                    if email.lower() in by_email:
                        self.cache.set(email.lower(), result)
        else:
            for email in to_verify:
                results[email] = self._format_result(email)

        return [results[email] for email in emails]

    async def validate_email(self, email: str, correlation_id: Optional[str] = None) -> EmailValidationResult:
        """Validate one address."""
        email = (email or "").strip()
        self.total_validations += 1
        cached = self.cache.get(email.lower())
        if cached is not None:
            return cached.model_copy(update={"email": email})
        results = await self._verify([email], correlation_id)
        return results[0]

    async def validate_batch(
        self,
        emails: List[str],
        correlation_id: Optional[str] = None
    ) -> List[EmailValidationResult]:
        """
        Validate many addresses, deduplicated case-insensitively.

        Returns:
            One result per unique address, in first-seen order
        """
        unique = self.remove_duplicates(emails)
        results: Dict[str, EmailValidationResult] = {}
        pending = []
        for email in unique:
            self.total_validations += 1
            cached = self.cache.get(email.lower())
            if cached is not None:
                results[email] = cached.model_copy(update={"email": email})
            else:
                pending.append(email)

        for i in range(0, len(pending), BATCH_SIZE):
            batch = pending[i:i + BATCH_SIZE]
            for result in await self._verify(batch, correlation_id):
                results[result.email] = result

        return [results[email] for email in unique]

    @staticmethod
    def remove_duplicates(emails: List[str]) -> List[str]:
        seen = set()
        unique = []
        for email in emails:
            cleaned = (email or "").strip()
            if cleaned and cleaned.lower() not in seen:
                seen.add(cleaned.lower())
                unique.append(cleaned)
        return unique

    def clear_cache(self) -> None:
        self.cache.clear()

    def get_cache_stats(self) -> Dict:
        stats = self.cache.stats()
        stats["total_validations"] = self.total_validations
        stats["fallback_validations"] = self.fallback_validations
        return stats
