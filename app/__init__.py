"""Car Listing Cache.

Mirrors a paginated remote auction listing API into a local database and
serves it through a globally sorted, filterable, cursor-paginated read API.
"""

__version__ = "0.1.0"
__author__ = "Catalog Platform Team"
