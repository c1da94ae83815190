import os
import sys

import pytest

# Ensure the package is importable without installation
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from lotseal import CertificationOrchestrator, InMemoryLedger, InMemoryRecordStore


@pytest.fixture
def store():
    return InMemoryRecordStore()


@pytest.fixture
def ledger():
    return InMemoryLedger()


@pytest.fixture
def orchestrator(store, ledger):
    return CertificationOrchestrator(store, ledger)
