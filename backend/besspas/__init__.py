"""besspas package initializer

Makes `backend/besspas` importable as `besspas` so tests and scripts can do
`from besspas import db` once `backend/` is on the path.
"""

from . import db as db
from . import models as models
from . import crud as crud
from . import schemas as schemas

__all__ = ["db", "models", "crud", "schemas"]
