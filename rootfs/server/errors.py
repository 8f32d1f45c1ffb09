class PortalError(Exception):
    http_status = 500
    default_message = "Internal error"

    def __init__(self, message=None):
        super().__init__(message or self.default_message)

    @property
    def message(self):
        return str(self)


class Unauthorized(PortalError):
    http_status = 401
    default_message = "Unauthorized"


class Forbidden(PortalError):
    http_status = 403
    default_message = "Forbidden: admin access required"


class NotFound(PortalError):
    http_status = 404
    default_message = "Peer not found"


class AlreadyExists(PortalError):
    http_status = 409
    default_message = "Peer already exists"


class AddressInUse(AlreadyExists):
    default_message = "Address already assigned to another peer"


class InvalidPublicKey(PortalError):
    http_status = 400
    default_message = "Invalid public key format"


class InvalidTemplate(PortalError):
    http_status = 400
    default_message = "Invalid template"


class InvalidRequest(PortalError):
    http_status = 400
    default_message = "Invalid request"


class NoAddressAvailable(PortalError):
    http_status = 503
    default_message = "No available IP addresses in subnet"


class RouterError(PortalError):
    http_status = 502
    default_message = "Router error"


class RouterUnreachable(RouterError):
    default_message = "Router unreachable"


class RouterRejected(RouterError):
    default_message = "Router rejected the request"

    def __init__(self, message=None, status=None, detail=None):
        super().__init__(message)
        self.status = status
        self.detail = detail


class MalformedRouterResponse(RouterError):
    default_message = "Unexpected response from router"
