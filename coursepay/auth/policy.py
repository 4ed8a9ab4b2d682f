# coursepay/auth/policy.py
"""
Authorization rules as one table of predicates.

evaluate(principal, resource, action, **context) answers yes/no;
authorize() raises ForbiddenException. Admins may do everything.
"""

from typing import Any, Callable, Dict, Tuple

from .principal import Principal, Role
from ..error_handlers import ForbiddenException


def _owner(principal: Principal, obj: Any = None, **_) -> bool:
    return obj is not None and getattr(obj, "user_id", None) == principal.user_id


def _student_owner(principal: Principal, obj: Any = None, **_) -> bool:
    return obj is not None and getattr(obj, "student_id", None) == principal.user_id


def _owner_or_course_instructor(principal: Principal, obj: Any = None, course: Any = None, **_) -> bool:
    if _owner(principal, obj):
        return True
    return (
        principal.role == Role.INSTRUCTOR
        and course is not None
        and course.instructor_id == principal.user_id
    )


def _authenticated(principal: Principal, **_) -> bool:
    return bool(principal.user_id)


def _nobody(principal: Principal, **_) -> bool:
    return False


RULES: Dict[Tuple[str, str], Callable[..., bool]] = {
    ("order", "create"): _authenticated,
    ("order", "read"): _owner_or_course_instructor,
    ("order", "cancel"): _owner,
    ("coupon", "apply"): _authenticated,
    ("coupon", "manage"): _nobody,
    ("enrollment", "create"): _authenticated,
    ("refund_request", "create"): _owner,  # obj is the order
    ("refund_request", "read"): _student_owner,
    ("refund_request", "check"): _owner,  # obj is the order
    ("refund_request", "process"): _nobody,
    ("payment_transaction", "read"): _owner,  # obj is the order
    ("admin", "access"): _nobody,
}


def evaluate(principal: Principal, resource: str, action: str, **context: Any) -> bool:
    if principal.is_admin:
        return True
    rule = RULES.get((resource, action))
    if rule is None:
        return False
    return rule(principal, **context)


def authorize(principal: Principal, resource: str, action: str, **context: Any) -> None:
    if not evaluate(principal, resource, action, **context):
        raise ForbiddenException(f"Not allowed to {action} {resource.replace('_', ' ')}")
