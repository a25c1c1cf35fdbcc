from typing import Iterable, Optional

ANONYMOUS = "Anonymous"


def resolve_nickname(members: Iterable, user_id: Optional[int], email: Optional[str]) -> str:
    """Display name for a participant.

    Priority: the project member's display name, then the account email, then
    ``"Anonymous"``. ``members`` are objects with ``usuario_id`` and
    ``display_name`` attributes. Blank values count as missing.
    """
    if user_id is not None:
        for member in members or []:
            if getattr(member, "usuario_id", None) != user_id:
                continue
            display_name = (getattr(member, "display_name", None) or "").strip()
            if display_name:
                return display_name
    cleaned_email = (email or "").strip()
    if cleaned_email:
        return cleaned_email
    return ANONYMOUS
