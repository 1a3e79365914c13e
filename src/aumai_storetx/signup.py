"""Signup: create a user together with its avatar and QR code objects."""

from __future__ import annotations

import logging
from typing import Any

from aumai_storetx.models import (
    ID_FIELD,
    ErrorCode,
    OperationKind,
    TransactionContext,
    UniquenessConstraint,
)
from aumai_storetx.schemas import SignupRequest
from aumai_storetx.workflow import Workflow

__all__ = ["SignupWorkflow", "USERS_COLLECTION", "EMAIL_CONSTRAINT", "USER_ID_CONSTRAINT"]

logger = logging.getLogger(__name__)

USERS_COLLECTION = "users"

EMAIL_CONSTRAINT = UniquenessConstraint(
    field="email", collection=USERS_COLLECTION, error_code=ErrorCode.DUPLICATE_EMAIL
)
USER_ID_CONSTRAINT = UniquenessConstraint(
    field=ID_FIELD, collection=USERS_COLLECTION, error_code=ErrorCode.DUPLICATE_USER
)


class SignupWorkflow(Workflow[SignupRequest]):
    """Upload the avatar and QR code, then create the user document.

    Both objects get fresh keys on every attempt, so a rejected duplicate
    signup only ever deletes its own uploads.
    """

    request_model = SignupRequest
    generic_code = ErrorCode.SIGNUP_ERROR
    name = "signup"

    def stage(self, ctx: TransactionContext, request: SignupRequest) -> dict[str, Any]:
        avatar_file_id = qr_code_file_id = None
        if request.avatar is not None:
            avatar = self.coordinator.upload(
                ctx,
                request.avatar,
                self.config.avatar_bucket_id,
                content_type=request.avatar_content_type,
            )
            avatar_file_id = avatar.identifier
        if request.qr_code is not None:
            qr_code = self.coordinator.upload(
                ctx, request.qr_code, self.config.qr_code_bucket_id, content_type="image/png"
            )
            qr_code_file_id = qr_code.identifier

        user = {
            "name": request.name,
            "email": request.email,
            "phone": request.phone,
            "avatarFileId": avatar_file_id,
            "qrCodeFileId": qr_code_file_id,
        }
        self.coordinator.stage(
            ctx,
            OperationKind.create,
            USERS_COLLECTION,
            request.user_id,
            {key: value for key, value in user.items() if value is not None},
            constraints=(EMAIL_CONSTRAINT, USER_ID_CONSTRAINT),
        )
        logger.debug("Staged user %s", request.user_id)
        return {
            "userId": request.user_id,
            "avatarFileId": avatar_file_id,
            "qrCodeFileId": qr_code_file_id,
        }
