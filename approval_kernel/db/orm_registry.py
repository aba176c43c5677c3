"""
Central ORM model registry.

Imports every ORM module so that ``Base.metadata`` knows all tables before
``create_all``.  The dispatch queue tables share the kernel's declarative
base, so they are listed here too.
"""


def import_all_orm_models() -> None:
    import approval_kernel.models.approval  # noqa: F401
    import approval_kernel.models.delegation  # noqa: F401
    import approval_kernel.models.escalation  # noqa: F401
    import approval_dispatch.models.queue  # noqa: F401
