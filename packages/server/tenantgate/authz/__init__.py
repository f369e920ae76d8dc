"""Authorization enforcement: fact loading, SQL predicates, RLS generation and the access guard."""

from .facts import load_access_facts  # noqa: F401
from .guard import AccessGuard  # noqa: F401
from .predicates import decision_clause, scoped_select  # noqa: F401
