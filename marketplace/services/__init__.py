# Services package.
#
# Ledger core, leaves first:
#
#   account_store: balance reads and conditional balance adjustment
#   ledger_recorder: append-only ledger entries and account history
#   transfer_engine: atomic multi-leg balance transfers (payment / refund)
#   booking_manager: booking lifecycle (create / cancel) around transfers
#   booking_query: read-side booking filtering, stats and summaries
#
# Directory modules:
#
#   user_service: user (account) profiles
#   catalog_service: service catalog CRUD with cache-aside reads
#
# Mutating core calls take an explicit ``AtomicContext`` opened by
# ``marketplace.atomic.TransactionRunner``; directory functions take the
# request ``AsyncSession`` whose transaction is owned by ``get_db``.
