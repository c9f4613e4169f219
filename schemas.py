"""
UNMA Registration Database Schemas

Each top-level Pydantic model corresponds to a MongoDB collection. The
collection name is the lowercase of the class name. Field names are camelCase
because the documents are shared with the admin dashboard as-is.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

RegistrationType = Literal["Alumni", "Staff", "Other"]


class PaymentStatus(str, Enum):
    COMPLETED = "Completed"
    PENDING = "pending"
    FINANCIAL_DIFFICULTY = "financial-difficulty"
    FOREIGN_TRANSACTION = "foreign-transaction"
    OTHER = "other"

    @classmethod
    def parse(cls, value: Any) -> "PaymentStatus":
        """Map a stored value onto the enum; anything unrecognised is OTHER."""
        if isinstance(value, cls):
            return value
        for member in cls:
            if member.value == value:
                return member
        return cls.OTHER


# Structured form sections

class Section(BaseModel):
    model_config = ConfigDict(extra="allow")


class Verification(Section):
    emailVerified: bool = False
    captchaVerified: bool = False
    quizPassed: bool = False
    email: Optional[str] = None
    contactNumber: Optional[str] = None


class PersonalInfo(Section):
    name: Optional[str] = None
    email: Optional[str] = None
    contactNumber: Optional[str] = None
    whatsappNumber: Optional[str] = None
    school: Optional[str] = None
    customSchoolName: Optional[str] = None
    yearOfPassing: Optional[str] = None
    country: Optional[str] = None
    stateUT: Optional[str] = None
    district: Optional[str] = None
    bloodGroup: Optional[str] = None
    registrationType: Optional[RegistrationType] = None


class Professional(Section):
    profession: List[str] = Field(default_factory=list)
    professionalDetails: Optional[str] = None
    businessDetails: Optional[str] = None
    areaOfExpertise: Optional[str] = None
    keySkills: Optional[str] = None
    yearsOfWorking: Optional[str] = None
    currentPosition: Optional[str] = None
    schoolsWorked: Optional[str] = None


class MealCount(BaseModel):
    veg: int = Field(0, ge=0)
    nonVeg: int = Field(0, ge=0)


class Attendees(BaseModel):
    adults: MealCount = Field(default_factory=MealCount)
    teens: MealCount = Field(default_factory=MealCount)
    children: MealCount = Field(default_factory=MealCount)
    toddlers: MealCount = Field(default_factory=MealCount)


class EventAttendance(Section):
    isAttending: bool = False
    attendees: Attendees = Field(default_factory=Attendees)
    eventParticipation: List[str] = Field(default_factory=list)
    participationDetails: Optional[str] = None


class Sponsorship(Section):
    interestedInSponsorship: bool = False
    canReferSponsorship: bool = False
    sponsorshipTier: Optional[str] = None
    sponsorshipDetails: Optional[str] = None


class Transportation(Section):
    isTravelling: bool = False
    travelConsistsTwoSegments: Optional[str] = None
    modeOfTransport: Optional[str] = None
    connectWithNavodayans: Optional[str] = None
    readyForRideShare: Optional[str] = None
    vehicleCapacity: Optional[int] = Field(None, ge=0)
    groupSize: Optional[int] = Field(None, ge=0)


class AccommodationNeeded(BaseModel):
    male: int = Field(0, ge=0)
    female: int = Field(0, ge=0)
    other: int = Field(0, ge=0)


class HotelRequirements(Section):
    adults: int = Field(0, ge=0)
    childrenAbove11: int = Field(0, ge=0)
    children5to11: int = Field(0, ge=0)


class Accommodation(Section):
    planAccommodation: bool = False
    accommodation: Optional[str] = None
    accommodationCapacity: Optional[int] = Field(None, ge=0)
    accommodationNeeded: AccommodationNeeded = Field(default_factory=AccommodationNeeded)
    hotelRequirements: HotelRequirements = Field(default_factory=HotelRequirements)


class OptionalInfo(Section):
    tshirtInterest: Optional[str] = None
    tshirtSizes: Dict[str, int] = Field(default_factory=dict)


class PaymentHistoryEntry(BaseModel):
    amount: float = Field(..., ge=0)
    date: datetime
    paymentMethod: Optional[str] = None
    transactionId: Optional[str] = None
    idempotencyKey: Optional[str] = None


class Financial(Section):
    willContribute: bool = False
    contributionAmount: float = Field(0, ge=0)
    proposedAmount: float = Field(0, ge=0)
    paymentStatus: Optional[str] = None
    paymentId: Optional[str] = None
    paymentHistory: List[PaymentHistoryEntry] = Field(default_factory=list)


class FormDataStructured(BaseModel):
    verification: Verification = Field(default_factory=Verification)
    personalInfo: PersonalInfo = Field(default_factory=PersonalInfo)
    professional: Professional = Field(default_factory=Professional)
    eventAttendance: EventAttendance = Field(default_factory=EventAttendance)
    sponsorship: Sponsorship = Field(default_factory=Sponsorship)
    transportation: Transportation = Field(default_factory=Transportation)
    accommodation: Accommodation = Field(default_factory=Accommodation)
    optional: OptionalInfo = Field(default_factory=OptionalInfo)
    financial: Financial = Field(default_factory=Financial)


SECTIONS = tuple(FormDataStructured.model_fields)


# Collections

class Registration(BaseModel):
    registrationType: RegistrationType = "Alumni"
    name: str = Field(..., max_length=100)
    email: str
    contactNumber: str
    whatsappNumber: Optional[str] = None
    emailVerified: bool = False
    paymentStatus: str = PaymentStatus.PENDING.value
    paymentId: Optional[str] = None
    school: Optional[str] = None
    customSchoolName: Optional[str] = None
    country: Optional[str] = None
    yearOfPassing: Optional[str] = None
    isAttending: bool = False
    willContribute: bool = False
    contributionAmount: float = Field(0, ge=0)
    formDataStructured: FormDataStructured = Field(default_factory=FormDataStructured)
    registrationDate: Optional[datetime] = None
    lastUpdated: Optional[datetime] = None
    lastUpdatedBy: Optional[str] = None
    userAgent: Optional[str] = None
    formSubmissionComplete: bool = False
    currentStep: int = Field(1, ge=1, le=8)
    serialNumber: Optional[int] = Field(None, ge=1)


class OtpVerification(BaseModel):
    email: Optional[str] = None
    contactNumber: Optional[str] = None
    otp: str
    createdAt: datetime
    verified: bool = False
    verifiedAt: Optional[datetime] = None
    attempts: int = Field(0, ge=0)
    ipAddress: Optional[str] = None
    userAgent: Optional[str] = None


class Transaction(BaseModel):
    transactionId: str
    registrationId: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    contactNumber: Optional[str] = None
    amount: float = Field(..., ge=0)
    status: Literal["pending", "completed", "failed", "refunded"] = "completed"
    purpose: str = "registration"
    paymentMethod: Optional[str] = None
    paymentGatewayResponse: Optional[Any] = None
    isAnonymous: bool = False
    notes: Optional[str] = None
    idempotencyKey: Optional[str] = None
    completedAt: Optional[datetime] = None


MessageStatus = Literal["new", "read", "in-progress", "responded", "resolved", "spam"]
MessagePriority = Literal["low", "medium", "high", "urgent"]
MessageCategory = Literal[
    "general-inquiry",
    "technical-support",
    "summit-related",
    "registration-help",
    "payment-issue",
    "sponsorship",
    "complaint",
    "suggestion",
    "other",
]


class ResponseData(BaseModel):
    respondedBy: Optional[str] = None
    responseDate: datetime
    responseMessage: str
    responseMethod: Literal["email", "phone", "internal-note"] = "email"


class AdminNote(BaseModel):
    note: str = Field(..., max_length=1000)
    addedBy: Optional[str] = None
    addedAt: datetime


class ContactMessage(BaseModel):
    name: Optional[str] = Field(None, max_length=100)
    email: EmailStr
    phone: Optional[str] = Field(None, pattern=r"^[\+]?[0-9\s\-\(\)]{10,15}$")
    subject: str = Field(..., min_length=1, max_length=200)
    message: str = Field(..., min_length=1, max_length=5000)
    status: MessageStatus = "new"
    priority: MessagePriority = "medium"
    category: MessageCategory = "general-inquiry"
    source: Literal["website-contact-form", "email", "phone", "social-media", "other"] = "website-contact-form"
    responseData: Optional[ResponseData] = None
    adminNotes: List[AdminNote] = Field(default_factory=list)
    ipAddress: Optional[str] = None
    userAgent: Optional[str] = None


class AdminPermissions(BaseModel):
    canViewAllSchools: bool = False


class Admin(BaseModel):
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Login email")
    password_hash: Optional[str] = Field(None, description="Hashed password")
    role: Literal["super_admin", "admin", "school_admin", "viewer"] = "admin"
    permissions: AdminPermissions = Field(default_factory=AdminPermissions)
    assignedSchools: List[str] = Field(default_factory=list)
    isActive: bool = True
