from __future__ import annotations

import pytest
from eth_account import Account
from eth_account.signers.local import LocalAccount


@pytest.fixture
def requester() -> LocalAccount:
    """Key pair of the task requester (signs contracts and payments)."""
    return Account.create()


@pytest.fixture
def stranger() -> LocalAccount:
    """An unrelated key pair."""
    return Account.create()
