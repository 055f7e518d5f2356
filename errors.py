"""Error taxonomy shared by the store and the HTTP layer."""


class SeatDeskError(Exception):
    status_code = 400

    def __init__(self, message: str, status_code: int = None):
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)

    def to_dict(self):
        return {"message": self.message}


class ValidationError(SeatDeskError):
    status_code = 400


class Unauthorized(SeatDeskError):
    status_code = 401


class NotFound(SeatDeskError):
    status_code = 404


class Conflict(SeatDeskError):
    status_code = 409
