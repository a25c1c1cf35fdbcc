from enum import Enum


class Role(str, Enum):
    SCRUM_MASTER = "Scrum Master"
    DEVELOPER = "Developer"
    PRODUCT_OWNER = "Product Owner"

    @classmethod
    def parse(cls, value) -> "Role":
        if isinstance(value, Role):
            return value
        cleaned = " ".join((value or "").replace("_", " ").split()).lower()
        for role in cls:
            if cleaned in {role.value.lower(), role.name.replace("_", " ").lower()}:
                return role
        raise ValueError(f"Invalid role: {value!r}")


def can_provision_retrospective(role: Role) -> bool:
    if role is Role.SCRUM_MASTER:
        return True
    if role is Role.DEVELOPER or role is Role.PRODUCT_OWNER:
        return False
    raise ValueError(f"Unhandled role: {role!r}")


def can_join_retrospective(role: Role, has_url: bool) -> bool:
    if role is Role.SCRUM_MASTER:
        return True
    if role is Role.DEVELOPER or role is Role.PRODUCT_OWNER:
        return has_url
    raise ValueError(f"Unhandled role: {role!r}")


def can_edit_planning(role: Role) -> bool:
    if role is Role.DEVELOPER:
        return False
    if role is Role.SCRUM_MASTER or role is Role.PRODUCT_OWNER:
        return True
    raise ValueError(f"Unhandled role: {role!r}")
