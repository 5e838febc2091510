"""
Call Signaling Exceptions

Custom exceptions for call signaling errors.
"""


class SignalingError(Exception):
    """Base exception for call signaling errors"""
    pass


class AlreadyInCallError(SignalingError):
    """Raised when a call is started while another session is not idle"""
    pass


class InvalidTargetError(SignalingError):
    """Raised when the call target is empty or is the local identity"""
    pass


class CallNotFoundError(SignalingError):
    """Raised when there is no ringing call to accept or reject"""
    pass
