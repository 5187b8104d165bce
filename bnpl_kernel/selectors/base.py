"""
Module: bnpl_kernel.selectors.base
Responsibility: Base class for read-only query selectors.  Selectors are the
    read side next to the repositories: structured access to contracts and
    lenders without mutation.
Architecture position: Kernel > Selectors.  May import from db/, domain/ and
    models/.  MUST NOT import from services/ or outer layers.

Invariants enforced:
    - Read-only: selectors never add, delete, flush or commit.
    - DTO return convention: selectors return frozen dataclasses, never ORM
      instances, so callers cannot mutate through them.
"""

from abc import ABC

from sqlalchemy.orm import Session


class BaseSelector(ABC):
    """
    Contract:
        Accepts the caller's Session and only reads through it.
    """

    def __init__(self, session: Session):
        self.session = session
