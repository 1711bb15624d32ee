"""School Admin Lifecycle Backend.

Provisions and retires student identities across a hosted identity
provider and a document store, recording every operation in a durable
ledger so partial failures can be resumed or compensated.

Copyright (C) 2025 Global Digital Labs (gdlabs.io)
SPDX-License-Identifier: LGPL-3.0-or-later
"""

__version__ = "1.0.0"
