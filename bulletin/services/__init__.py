# Services package.
#
# Each module exposes a focused set of async functions that encapsulate
# business logic and database access for a single domain aggregate:
#
#   article_service     - publication window listing / search, read
#                         counting, create / update / delete for Article
#   attachment_service  - binding uploaded files to their owning Article
#   user_service        - credential store: lookup, registration, login
#
# All service functions accept an AsyncSession as their first argument
# so that the router layer controls the transaction boundary via the
# ``get_db`` dependency.
