"""Stand-ins for the authorization and farmer creation collaborators."""
import threading
import time
from typing import Dict, List, Optional

from farmers_service.exceptions import FarmerCreationError


def make_farmer(index: int, **overrides) -> Dict[str, str]:
    """A valid inline farmer record with a unique phone number."""
    farmer = {
        "first_name": "Ravi",
        "last_name": f"Kumar{index}",
        "phone_number": f"9{index:09d}",
        "gender": "male",
        "city": "Pune",
    }
    farmer.update(overrides)
    return farmer


class FakePermissionChecker:
    def __init__(self, allowed: bool = True, error: Optional[Exception] = None):
        self.allowed = allowed
        self.error = error
        self.calls: List[tuple] = []

    def check_permission(self, subject, resource, action, object_id, org_id):
        self.calls.append((subject, resource, action, object_id, org_id))
        if self.error is not None:
            raise self.error
        return self.allowed


class FakeFarmerCreator:
    """Thread-safe stand-in for the farmer service.

    ``failures`` maps a phone number to a list of exceptions raised on
    successive attempts; once exhausted the record succeeds.
    """

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.delays: Dict[str, float] = {}
        self.failures: Dict[str, List[FarmerCreationError]] = {}
        self.calls: List[int] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def create_farmer(self, record, *, fpo_org_id, requested_by):
        with self._lock:
            self.calls.append(record.index)
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            pending = self.failures.get(record.phone_number)
            error = pending.pop(0) if pending else None
        try:
            delay = self.delays.get(record.phone_number, self.delay)
            if delay:
                time.sleep(delay)
            if error is not None:
                raise error
            return f"farmer-{record.index}"
        finally:
            with self._lock:
                self.in_flight -= 1
