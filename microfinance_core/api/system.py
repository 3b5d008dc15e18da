"""
Engine wiring shared by the API routers
"""

from datetime import date
from typing import Callable, Optional

from fastapi import HTTPException, Request, status

from ..config import MicrofinanceConfig, get_config
from ..repository import LedgerRepository, SQLiteRepository
from ..audit import AuditTrail
from ..ledger import LedgerPoster
from ..references import ReferenceGenerator
from ..backdate import BackdateApprovalManager
from ..loans import LoanService
from ..errors import (
    AccountNotFoundError, ApprovalRequiredError, InvalidInputError,
    JournalEntryNotFoundError, MicrofinanceError, ReferenceCollisionError,
    StorageUnavailableError, UnbalancedEntryError
)


class MicrofinanceSystem:
    """Repository plus every engine component built on it"""

    def __init__(
        self,
        repository: Optional[LedgerRepository] = None,
        config: Optional[MicrofinanceConfig] = None,
        clock: Optional[Callable[[], date]] = None
    ):
        self.config = config or get_config()
        self.repository = repository or SQLiteRepository(
            self.config.database_path, timeout=self.config.storage_timeout_seconds
        )

        self.audit_trail = AuditTrail(self.repository)
        self.poster = LedgerPoster(self.repository, self.config, self.audit_trail, clock)
        self.references = ReferenceGenerator(self.repository, self.config, clock)
        self.approvals = BackdateApprovalManager(self.repository, self.config, self.audit_trail, clock)
        self.loans = LoanService(self.poster, self.references, self.repository, self.config,
                                 self.audit_trail)


# Dependency to get the engine attached to the running app
def get_system(request: Request) -> MicrofinanceSystem:
    return request.app.state.system


_STATUS_BY_ERROR = (
    (ApprovalRequiredError, status.HTTP_409_CONFLICT),
    (UnbalancedEntryError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (InvalidInputError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (AccountNotFoundError, status.HTTP_404_NOT_FOUND),
    (JournalEntryNotFoundError, status.HTTP_404_NOT_FOUND),
    (ReferenceCollisionError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (StorageUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def http_error(error: MicrofinanceError) -> HTTPException:
    """Translate an engine error into an HTTPException carrying its details"""
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return HTTPException(status_code=status_code, detail=error.to_dict())
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=error.to_dict())
