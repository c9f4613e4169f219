import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordRequestForm
from pydantic import BaseModel, EmailStr, Field
from pymongo.errors import DuplicateKeyError, PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

import analytics
import config
import contact
import database
import duplicates
import otp
import payments
import registrations
import serials
from auth import AdminContext, authenticate, create_token, get_current_admin, require_super_admin
from database import get_db, parse_object_id
from errors import AppError, NotFoundError

logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        database.ensure_indexes(database.db)
    else:
        logger.warning("DATABASE_URL / DATABASE_NAME not set, running without a database")
    yield


app = FastAPI(title=config.APP_NAME, version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Envelope

def success(data: Any = None, message: Optional[str] = None, **extra) -> dict:
    body = {"status": "success"}
    if message:
        body["message"] = message
    if data is not None:
        body["data"] = data
    body.update(extra)
    return body


def error_response(status_code: int, message: str, error: Optional[str] = None) -> JSONResponse:
    body = {"status": "error", "message": message}
    if error:
        body["error"] = error
    return JSONResponse(status_code=status_code, content=body)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message} ({exc.error})")
    return error_response(exc.status_code, exc.message, exc.error)


@app.exception_handler(DuplicateKeyError)
async def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
    return error_response(400, "Duplicate record", str(exc))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    details = "; ".join(f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in exc.errors())
    return error_response(400, "Validation error", details)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return error_response(exc.status_code, str(exc.detail))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return error_response(500, "Internal server error", str(exc))


def client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


# Request models

class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


class OtpRequest(BaseModel):
    email: Optional[EmailStr] = None
    contactNumber: Optional[str] = None
    update: bool = False


class OtpVerify(OtpRequest):
    otp: str


class StepSubmission(BaseModel):
    step: Optional[int] = None
    stepData: Dict[str, Any] = Field(default_factory=dict)
    verificationToken: Optional[str] = None


class ContactLookup(BaseModel):
    email: Optional[str] = None
    contactNumber: Optional[str] = None


class PaymentBody(BaseModel):
    amount: float = Field(..., ge=0)
    paymentMethod: Optional[str] = None
    paymentGatewayResponse: Any = None
    isAnonymous: bool = False
    purpose: str = "registration"
    notes: Optional[str] = None
    idempotencyKey: Optional[str] = None


class TransactionBody(PaymentBody):
    name: Optional[str] = None
    email: Optional[str] = None
    contact: Optional[str] = None


class PaymentUpdate(BaseModel):
    paymentStatus: str
    transactionId: Optional[str] = None
    paymentAmount: float = Field(0, ge=0)
    paymentMethod: Optional[str] = None
    idempotencyKey: Optional[str] = None


class AdditionalAmount(BaseModel):
    amount: float = Field(..., ge=0)
    transactionId: Optional[str] = None
    paymentMethod: Optional[str] = None
    idempotencyKey: Optional[str] = None


class SerialAssignment(BaseModel):
    registrationId: str


class ContactMessageIn(BaseModel):
    name: Optional[str] = None
    email: str
    phone: Optional[str] = None
    subject: str
    message: str
    category: Optional[str] = None
    priority: Optional[str] = None


class StatusUpdate(BaseModel):
    status: str


class BulkStatusUpdate(BaseModel):
    messageIds: List[str]
    status: str


class MessageResponse(BaseModel):
    responseMessage: Optional[str] = None
    responseMethod: str = "email"


class NoteIn(BaseModel):
    note: Optional[str] = None


# Health

@app.get("/")
def root():
    return {"message": f"{config.APP_NAME} API running"}


@app.get("/health")
def health():
    status = {"backend": "running", "database": "not configured"}
    if database.db is not None:
        try:
            database.db.command("ping")
            status["database"] = "connected"
        except PyMongoError as e:
            logger.warning(f"Database ping failed: {e}")
            status["database"] = "unreachable"
    return success(status)


# Admin auth

@app.post("/auth/login", response_model=Token)
def login(form_data: OAuth2PasswordRequestForm = Depends(), db=Depends(get_db)):
    admin = authenticate(db, form_data.username, form_data.password)
    logger.info(f"Admin {admin.email} logged in")
    return Token(access_token=create_token({"sub": admin.email, "role": admin.role}))


# Public registration flow

@app.post("/registrations/send-otp")
def send_otp(body: OtpRequest, request: Request, db=Depends(get_db)):
    result = otp.request_otp(
        db,
        body.email,
        body.contactNumber,
        is_update_flow=body.update,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return success(result, "OTP sent successfully")


@app.post("/registrations/verify-otp")
def verify_otp(body: OtpVerify, db=Depends(get_db)):
    result = otp.verify_otp(db, body.email, body.contactNumber, body.otp, is_update_flow=body.update)
    return success(result, "OTP verified successfully")


def _save_step(db, step: int, body: StepSubmission, request: Request, response: Response, **kwargs):
    result = registrations.save_step(
        db,
        body.step if body.step is not None else step,
        body.stepData,
        verification_token=body.verificationToken,
        user_agent=request.headers.get("user-agent"),
        **kwargs,
    )
    created = result.pop("created")
    if created:
        response.status_code = 201
    return success(result, "Registration created successfully" if created else "Registration step saved successfully")


@app.post("/registrations/step/{step}")
def save_registration_step(step: int, body: StepSubmission, request: Request, response: Response, db=Depends(get_db)):
    return _save_step(db, step, body, request, response)


@app.post("/registrations/staff/{step}")
def save_staff_step(step: int, body: StepSubmission, request: Request, response: Response, db=Depends(get_db)):
    return _save_step(
        db,
        step,
        body,
        request,
        response,
        final_step=registrations.STAFF_FINAL_STEP,
        registration_type="Staff",
    )


@app.post("/registrations/get-by-contact")
def get_by_contact(body: ContactLookup, db=Depends(get_db)):
    return success(registrations.get_registration_by_contact(db, body.email, body.contactNumber))


@app.post("/registrations/{registration_id}/payment")
def process_payment(
    registration_id: str,
    body: PaymentBody,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    db=Depends(get_db),
):
    result = payments.process_payment(
        db,
        registration_id,
        body.amount,
        payment_method=body.paymentMethod,
        payment_gateway_response=body.paymentGatewayResponse,
        is_anonymous=body.isAnonymous,
        purpose=body.purpose,
        notes=body.notes,
        idempotency_key=idempotency_key or body.idempotencyKey,
    )
    return success(result, "Payment processed successfully")


@app.post("/registrations/transaction/{registration_id}")
def register_transaction(
    registration_id: str,
    body: TransactionBody,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    db=Depends(get_db),
):
    result = payments.register_transaction(
        db,
        registration_id,
        body.amount,
        name=body.name,
        email=body.email,
        contact_number=body.contact,
        payment_method=body.paymentMethod,
        payment_gateway_response=body.paymentGatewayResponse,
        is_anonymous=body.isAnonymous,
        purpose=body.purpose,
        notes=body.notes,
        idempotency_key=idempotency_key or body.idempotencyKey,
    )
    return success(result, "Transaction registered successfully")


@app.post("/contact-messages/send-message", status_code=201)
def send_message(body: ContactMessageIn, request: Request, db=Depends(get_db)):
    message = contact.create_message(
        db,
        body.model_dump(),
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return success(message, "Your message has been sent successfully. We'll get back to you soon!")


# Admin: registrations

@app.get("/registrations")
def list_registrations(
    page: int = 1,
    limit: int = 10,
    registrationType: Optional[str] = None,
    formSubmissionComplete: Optional[str] = None,
    isAttending: Optional[str] = None,
    paymentStatus: Optional[str] = None,
    school: Optional[str] = None,
    search: Optional[str] = None,
    sortBy: str = "registrationDate",
    sortOrder: str = "desc",
    fromDate: Optional[str] = None,
    toDate: Optional[str] = None,
    admin: AdminContext = Depends(get_current_admin),
    db=Depends(get_db),
):
    result = registrations.list_registrations(
        db,
        admin,
        page=page,
        limit=limit,
        registration_type=registrationType,
        form_submission_complete=formSubmissionComplete,
        is_attending=isAttending,
        payment_status=paymentStatus,
        school=school,
        search=search,
        sort_by=sortBy,
        sort_order=sortOrder,
        from_date=fromDate,
        to_date=toDate,
    )
    return success(**result)


@app.get("/registrations/type/{registration_type}")
def registrations_by_type(
    registration_type: str,
    page: int = 1,
    limit: int = 10,
    admin: AdminContext = Depends(get_current_admin),
    db=Depends(get_db),
):
    result = registrations.list_registrations(db, admin, page=page, limit=limit, registration_type=registration_type)
    return success(**result)


@app.get("/registrations/stats")
def registration_stats(admin: AdminContext = Depends(get_current_admin), db=Depends(get_db)):
    return success(registrations.registration_stats(db))


@app.get("/registrations/duplicates/export")
def duplicate_groups(admin: AdminContext = Depends(get_current_admin), db=Depends(get_db)):
    return success(duplicates.find_duplicate_groups(db))


@app.delete("/registrations/duplicates/delete-pending")
def delete_duplicates(
    dry_run: bool = Query(False, alias="dryRun"),
    admin: AdminContext = Depends(get_current_admin),
    db=Depends(get_db),
):
    result = duplicates.resolve_duplicates(db, dry_run=dry_run)
    count = result["summary"]["registrationsDeleted"]
    if dry_run:
        message = f"Dry run completed: {count} duplicate registrations would be deleted"
    else:
        message = f"Successfully deleted {count} duplicate registrations"
    logger.info(f"Duplicate cleanup run by {admin.email} (dryRun={dry_run})")
    return success(result, message)


@app.post("/registrations/assign-serial")
def assign_serial(body: SerialAssignment, admin: AdminContext = Depends(get_current_admin), db=Depends(get_db)):
    oid = parse_object_id(body.registrationId, "registration ID")
    if not db["registration"].find_one({"_id": oid}, {"_id": 1}):
        raise NotFoundError("Registration not found")
    serial = serials.auto_assign(db, oid)
    if serial is None:
        raise AppError("Failed to assign serial number")
    return success({"registrationId": str(oid), "serialNumber": serial}, "Serial number assigned successfully")


@app.post("/registrations/bulk-assign-serial")
def bulk_assign_serial(admin: AdminContext = Depends(get_current_admin), db=Depends(get_db)):
    result = serials.bulk_assign(db)
    return success(result, f"Serial numbers assigned to {result['summary']['successful']} registrations")


@app.get("/registrations/serial-number-status")
def serial_number_status(admin: AdminContext = Depends(get_current_admin), db=Depends(get_db)):
    return success(serials.serial_status(db))


@app.get("/registrations/{registration_id}")
def get_registration(registration_id: str, admin: AdminContext = Depends(get_current_admin), db=Depends(get_db)):
    return success(registrations.get_registration(db, registration_id))


@app.delete("/registrations/{registration_id}")
def delete_registration(registration_id: str, admin: AdminContext = Depends(require_super_admin), db=Depends(get_db)):
    removed = registrations.delete_registration(db, registration_id)
    return success({"transactionsDeleted": removed}, "Registration deleted successfully")


# Admin: analytics

@app.get("/admin/analytics/dashboard")
def dashboard_stats(admin: AdminContext = Depends(get_current_admin), db=Depends(get_db)):
    return success(analytics.dashboard_stats(db, admin))


@app.get("/admin/analytics/payment")
def payment_analytics(admin: AdminContext = Depends(get_current_admin), db=Depends(get_db)):
    return success(analytics.payment_analytics(db, admin))


@app.get("/admin/analytics/daily")
def daily_registrations(days: int = 30, admin: AdminContext = Depends(get_current_admin), db=Depends(get_db)):
    return success(analytics.daily_registrations(db, admin, days=days))


@app.get("/admin/analytics/district")
def district_analytics(admin: AdminContext = Depends(get_current_admin), db=Depends(get_db)):
    return success(analytics.district_analytics(db, admin))


# Public payment updates on an existing registration

@app.put("/registrations/{registration_id}")
def update_registration_payment(
    registration_id: str,
    body: PaymentUpdate,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    db=Depends(get_db),
):
    registration = payments.update_registration_payment(
        db,
        registration_id,
        body.paymentStatus,
        transaction_id=body.transactionId,
        payment_amount=body.paymentAmount,
        payment_method=body.paymentMethod,
        idempotency_key=idempotency_key or body.idempotencyKey,
    )
    return success(registration, "Registration payment updated successfully")


@app.patch("/registrations/{registration_id}/add-more-amount")
def add_more_amount(
    registration_id: str,
    body: AdditionalAmount,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    db=Depends(get_db),
):
    registration = payments.add_more_amount(
        db,
        registration_id,
        body.amount,
        transaction_id=body.transactionId,
        payment_method=body.paymentMethod,
        idempotency_key=idempotency_key or body.idempotencyKey,
    )
    return success(registration, "Amount added successfully")


# Admin: contact messages

@app.get("/contact-messages")
def list_messages(
    page: int = 1,
    limit: int = 10,
    status: Optional[str] = None,
    category: Optional[str] = None,
    priority: Optional[str] = None,
    search: Optional[str] = None,
    sortBy: str = "createdAt",
    sortOrder: str = "desc",
    admin: AdminContext = Depends(get_current_admin),
    db=Depends(get_db),
):
    result = contact.list_messages(
        db,
        page=page,
        limit=limit,
        status=status,
        category=category,
        priority=priority,
        search=search,
        sort_by=sortBy,
        sort_order=sortOrder,
    )
    return success(**result)


@app.get("/contact-messages/stats")
def message_stats(admin: AdminContext = Depends(get_current_admin), db=Depends(get_db)):
    return success(contact.message_stats(db))


@app.get("/contact-messages/unread-count")
def unread_count(admin: AdminContext = Depends(get_current_admin), db=Depends(get_db)):
    return success({"unreadCount": contact.unread_count(db)})


@app.put("/contact-messages/bulk/status")
def bulk_update_status(body: BulkStatusUpdate, admin: AdminContext = Depends(require_super_admin), db=Depends(get_db)):
    result = contact.bulk_update_status(db, body.messageIds, body.status)
    return success(result, f"{result['modifiedCount']} messages updated to {body.status}")


@app.get("/contact-messages/{message_id}")
def get_message(message_id: str, admin: AdminContext = Depends(get_current_admin), db=Depends(get_db)):
    return success(contact.get_message(db, message_id))


@app.put("/contact-messages/{message_id}/status")
def update_message_status(
    message_id: str, body: StatusUpdate, admin: AdminContext = Depends(get_current_admin), db=Depends(get_db)
):
    return success(contact.update_status(db, message_id, body.status), f"Message status updated to {body.status}")


@app.post("/contact-messages/{message_id}/respond")
def respond_to_message(
    message_id: str, body: MessageResponse, admin: AdminContext = Depends(get_current_admin), db=Depends(get_db)
):
    message = contact.respond(db, message_id, admin, body.responseMessage, body.responseMethod)
    return success(message, "Response sent successfully")


@app.post("/contact-messages/{message_id}/notes")
def add_message_note(message_id: str, body: NoteIn, admin: AdminContext = Depends(get_current_admin), db=Depends(get_db)):
    return success(contact.add_note(db, message_id, admin, body.note), "Note added successfully")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
