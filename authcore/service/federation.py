from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Protocol, Union

from authcore.logging import get_logger
from authcore.service.clock import Clock, SystemClock
from authcore.service.errors import AuthFailure, FailureKind
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import Account, Provider

DEFAULT_DISPLAY_NAME = "Unknown"


@dataclass(frozen=True)
class CanonicalProfile:
    """Provider-neutral identity extracted from a verified attribute set."""

    provider_subject_id: str
    email: str
    display_name: str
    avatar_url: Optional[str] = None


class ProfileExtractor(Protocol):
    def extract(
        self, attributes: Mapping[str, Any]
    ) -> Union[CanonicalProfile, AuthFailure]:
        ...


def _missing(field: str) -> AuthFailure:
    return AuthFailure(
        FailureKind.MISSING_REQUIRED_FIELD,
        f"provider attributes lack {field}",
        {"field": field},
    )


def _mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def _text(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value
    return None


class GoogleProfileExtractor:
    def extract(
        self, attributes: Mapping[str, Any]
    ) -> Union[CanonicalProfile, AuthFailure]:
        subject = _text(attributes.get("sub"))
        if subject is None:
            return _missing("sub")
        email = _text(attributes.get("email"))
        if email is None:
            return _missing("email")
        return CanonicalProfile(
            provider_subject_id=subject,
            email=email,
            display_name=_text(attributes.get("name")) or DEFAULT_DISPLAY_NAME,
            avatar_url=_text(attributes.get("picture")),
        )


class KakaoProfileExtractor:
    """Reads Kakao's numeric ``id`` plus the nested ``kakao_account`` block.

    Kakao omits ``kakao_account.email`` when the user withholds consent. With
    ``allow_missing_email`` the identity is accepted with an empty email, as
    older deployments did; otherwise extraction fails.
    """

    def __init__(self, *, allow_missing_email: bool = False) -> None:
        self.allow_missing_email = allow_missing_email

    @staticmethod
    def _subject(raw: Any) -> Optional[str]:
        if isinstance(raw, bool):
            return None
        if isinstance(raw, int):
            return str(raw)
        if isinstance(raw, float) and raw.is_integer():
            return str(int(raw))
        if isinstance(raw, str):
            digits = raw.strip()
            if digits.isascii() and digits.isdigit():
                return digits
        return None

    def extract(
        self, attributes: Mapping[str, Any]
    ) -> Union[CanonicalProfile, AuthFailure]:
        subject = self._subject(attributes.get("id"))
        if subject is None:
            return _missing("id")
        account = _mapping(attributes.get("kakao_account"))
        profile = _mapping(account.get("profile"))
        email = _text(account.get("email"))
        if email is None:
            if not self.allow_missing_email:
                return _missing("kakao_account.email")
            email = ""
        return CanonicalProfile(
            provider_subject_id=subject,
            email=email,
            display_name=_text(profile.get("nickname")) or DEFAULT_DISPLAY_NAME,
            avatar_url=_text(profile.get("thumbnail_image_url")),
        )


PROFILE_EXTRACTORS: Dict[Provider, ProfileExtractor] = {
    Provider.GOOGLE: GoogleProfileExtractor(),
    Provider.KAKAO: KakaoProfileExtractor(),
}


class IdentityReconciler:
    """Maps a verified provider attribute set onto a local account.

    The first federation of a provider identity creates an account with role
    USER; later federations refresh its display name and avatar. Lookup is by
    (provider, subject) only. Email collisions are left to the store's unique
    constraint and come back as ``STORE_CONFLICT``.
    """

    def __init__(
        self,
        store,
        *,
        clock: Optional[Clock] = None,
        extractors: Optional[Dict[Provider, ProfileExtractor]] = None,
    ) -> None:
        self.store = store
        self.clock = clock or SystemClock()
        self.extractors = dict(extractors or PROFILE_EXTRACTORS)
        self.logger = get_logger(__name__)

    def extract(
        self, provider: Provider, attributes: Mapping[str, Any]
    ) -> Union[CanonicalProfile, AuthFailure]:
        extractor = self.extractors.get(provider)
        if extractor is None:
            return _missing("provider")
        return extractor.extract(_mapping(attributes))

    def reconcile(
        self, provider: Union[Provider, str], attributes: Mapping[str, Any]
    ) -> Union[Account, AuthFailure]:
        parsed = Provider.parse(provider)
        if parsed is None:
            return _missing("provider")
        profile = self.extract(parsed, attributes)
        if isinstance(profile, AuthFailure):
            self.logger.info(
                "federation_profile_incomplete",
                provider=parsed.value,
                field=profile.detail.get("field"),
            )
            return profile

        now = self.clock.now()
        existing = self.store.get_account_by_provider(parsed, profile.provider_subject_id)
        if existing:
            account = existing.with_profile(profile.display_name, profile.avatar_url, now)
        else:
            account = Account.new(
                email=profile.email,
                display_name=profile.display_name,
                provider=parsed,
                provider_subject_id=profile.provider_subject_id,
                avatar_url=profile.avatar_url,
                now=now,
            )
        try:
            self.store.save_account(account)
        except ConstraintViolation as exc:
            self.logger.warning(
                "federation_store_conflict",
                provider=parsed.value,
                field=exc.field,
                error=exc.message,
            )
            return AuthFailure(
                FailureKind.STORE_CONFLICT,
                "identity conflicts with an existing account",
                {"field": exc.field} if exc.field else {},
            )
        self.logger.info(
            "federation_account_reconciled",
            provider=parsed.value,
            account_id=account.id,
            created=existing is None,
        )
        return account
