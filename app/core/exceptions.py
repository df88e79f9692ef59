from __future__ import annotations


class NotFoundError(LookupError):
    code = "not_found"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ApiKeyNotFoundError(NotFoundError):
    code = "api_key_not_found"


class AccountNotFoundError(NotFoundError):
    code = "account_not_found"


class GroupNotFoundError(NotFoundError):
    code = "group_not_found"


class MappingNotFoundError(NotFoundError):
    code = "mapping_not_found"


class ConflictError(ValueError):
    code = "conflict"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class DuplicatePermissionError(ConflictError):
    code = "duplicate_permission"


class DuplicateGroupError(ConflictError):
    code = "duplicate_group"


class DuplicateGroupMappingError(ConflictError):
    code = "duplicate_group_account"


class ProtectedGroupError(ConflictError):
    code = "protected_group"


class InvalidRequestError(ValueError):
    code = "invalid_request"

    def __init__(self, message: str, *, param: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.param = param


class InvalidPermissionError(InvalidRequestError):
    code = "invalid_permission"


class InvalidGroupError(InvalidRequestError):
    code = "invalid_group"
