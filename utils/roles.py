CUSTOMER = "CUSTOMER"
VENDOR = "VENDOR"
ADMIN = "ADMIN"

DEFAULT_ROLES = [CUSTOMER, VENDOR, ADMIN]

# most privileged first
_ROLE_PRECEDENCE = (ADMIN, VENDOR, CUSTOMER)

# request header a multi-role user sends to pick the role they act as
ACTING_ROLE_HEADER = "X-Acting-Role"


def _role_names(roles):
    names = set()
    for role in roles or []:
        name = role if isinstance(role, str) else getattr(role, "name", None)
        if name:
            names.add(name.upper())
    return names


def primary_role(roles, requested=None):
    """
    Pick the acting role for a user holding several roles.

    ``requested`` selects one of the held roles, e.g. a vendor who also
    rents asks for CUSTOMER. Without it (or when the user does not hold
    it) the most privileged role wins.
    """
    names = _role_names(roles)
    if requested and requested.strip().upper() in names:
        return requested.strip().lower()
    for name in _ROLE_PRECEDENCE:
        if name in names:
            return name.lower()
    return None
