from __future__ import annotations

import logging
import re
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from gule.auth import issue_token
from gule.config import Config
from gule.errors import AuthenticationError, ConflictError, ValidationError
from gule.identity import Identity
from gule.models import ACCOUNT_MODELS, Admin, Buyer, Seller, SellerStatus, UserType, utcnow
from gule.observability import increment_counter
from gule.services.audit import AuditLogger, get_audit_logger
from gule.validation import require_enum, require_str, require_text

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MIN_PASSWORD_LENGTH = 8


def normalize_email(value: Any) -> str:
    email = require_str(value, "email", max_length=255).lower()
    if not EMAIL_PATTERN.match(email):
        raise ValidationError("Please provide a valid email", fields={"email": "invalid email"})
    return email


class AccountService:
    def __init__(self, db_session: Session, audit_logger: Optional[AuditLogger] = None) -> None:
        self.db = db_session
        self.audit = audit_logger or get_audit_logger()
        self.logger = logging.getLogger(__name__)

    def _email_taken(self, model, email: str) -> bool:
        return self.db.query(model).filter(model.email == email).first() is not None

    def register(self, user_type: Any, payload: Dict[str, Any]):
        """Create a buyer or seller account. Admins come from bootstrap only."""
        kind = require_enum(UserType, user_type, "userType")
        if kind == UserType.ADMIN:
            raise ValidationError("Admin accounts cannot self-register", fields={"userType": "buyer or seller"})

        email = normalize_email(payload.get("email"))
        password = payload.get("password")
        if not isinstance(password, str) or len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters",
                fields={"password": f"at least {MIN_PASSWORD_LENGTH} characters"},
            )
        phone = require_str(payload.get("phone"), "phone", max_length=50, required=False)

        model = ACCOUNT_MODELS[kind]
        if self._email_taken(model, email):
            raise ConflictError("An account with this email already exists", fields={"email": "already registered"})

        if kind == UserType.BUYER:
            account = Buyer(
                email=email,
                phone=phone,
                first_name=require_text(payload.get("firstName"), "firstName", max_length=100),
                last_name=require_text(payload.get("lastName"), "lastName", max_length=100),
            )
        else:
            account = Seller(
                email=email,
                phone=phone,
                business_name=require_text(payload.get("businessName"), "businessName", max_length=255),
                status=SellerStatus.ACTIVE,
            )
        account.set_password(password)
        self.db.add(account)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise ConflictError("An account with this email already exists", fields={"email": "already registered"}) from None

        increment_counter("accounts_registered_total", labels={"user_type": kind.value})
        self.audit.log(
            "REGISTER",
            kind.value,
            account.id,
            actor=Identity(account.id, kind, account.role),
        )
        self.logger.info("Registered %s account %s", kind.value, account.id)
        return account, issue_token(account)

    def login(self, email: Any, password: Any, user_type: Any) -> Tuple[Any, str]:
        kind = require_enum(UserType, user_type, "userType")
        email = normalize_email(email)
        model = ACCOUNT_MODELS[kind]
        account = self.db.query(model).filter(model.email == email).first()

        if account is None or not isinstance(password, str) or not account.check_password(password):
            increment_counter("logins_failed_total", labels={"user_type": kind.value})
            self.audit.log("LOGIN", kind.value, account.id if account else None, success=False, details={"email": email})
            raise AuthenticationError("Invalid credentials")
        if not account.is_active:
            raise AuthenticationError("Account is deactivated")

        account.last_login_at = utcnow()
        self.db.commit()
        increment_counter("logins_total", labels={"user_type": kind.value})
        self.audit.log("LOGIN", kind.value, account.id, actor=Identity(account.id, kind, account.role))
        return account, issue_token(account)

    def get_account(self, identity: Identity):
        account = self.db.get(ACCOUNT_MODELS[identity.user_type], identity.id)
        if account is None:
            raise AuthenticationError("Account not found")
        return account

    def bootstrap_super_admin(self, config: type[Config] = Config) -> Optional[Admin]:
        """Create the configured super admin on first start."""
        if not config.SUPER_ADMIN_EMAIL or not config.SUPER_ADMIN_PASSWORD:
            return None
        email = normalize_email(config.SUPER_ADMIN_EMAIL)
        existing = self.db.query(Admin).filter(Admin.email == email).first()
        if existing is not None:
            return existing

        admin = Admin(email=email, name=config.SUPER_ADMIN_NAME, admin_role="super_admin")
        admin.set_password(config.SUPER_ADMIN_PASSWORD)
        self.db.add(admin)
        self.db.commit()
        self.logger.info("Super admin %s created", email)
        return admin
