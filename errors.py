"""Failures raised by the auth and gallery services.

Every error carries the message shown to the user and the HTTP status the
route layer answers with.
"""
from __future__ import annotations


class GalleryError(Exception):
    status = 500
    default_message = "Request failed."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationFailed(GalleryError):
    status = 400
    default_message = "Invalid input."


class Unauthenticated(GalleryError):
    status = 401
    default_message = "Authentication required."


class Forbidden(GalleryError):
    status = 403
    default_message = "You are not allowed to do that."


class NotFound(GalleryError):
    status = 404
    default_message = "Not found."


class StorageFailed(GalleryError):
    status = 500
    default_message = "Storage operation failed."


class AuthError(GalleryError):
    status = 400
    default_message = "Authentication failed."


class InvalidInput(AuthError):
    status = 400
    default_message = "Invalid input."


class DuplicateEmail(AuthError):
    status = 422
    default_message = "User already exists. Use another email."


class InvalidCredentials(AuthError):
    status = 401
    default_message = "Invalid email or password."
