"""
Server-side clean-up of the structured registration form.

The public form reveals and hides fields depending on earlier answers, and a
user can navigate back and change those answers. These functions reset every
field whose precondition no longer holds so stale values never reach the
database. Each function looks only at sibling fields in its own section, never
mutates its input and returns `None` unchanged.
"""
from typing import Optional

RIDE_SHARE_MODES = ("car", "two-wheeler", "bus")
BUSINESS_OWNER = "Business Owner/Entrepreneur"
TSHIRT_SIZES = ("XS", "S", "M", "L", "XL", "XXL", "XXXL")
ATTENDEE_GROUPS = ("adults", "teens", "children", "toddlers")

PROVIDER_FIELDS = (
    "accommodationGender",
    "accommodationPincode",
    "accommodationDistrict",
    "accommodationState",
    "accommodationTaluk",
    "accommodationLandmark",
    "accommodationSubPostOffice",
    "accommodationArea",
    "accommodationLocation",
)


def empty_attendees() -> dict:
    return {group: {"veg": 0, "nonVeg": 0} for group in ATTENDEE_GROUPS}


def empty_accommodation_needed() -> dict:
    return {"male": 0, "female": 0, "other": 0}


def empty_hotel_requirements() -> dict:
    return {
        "adults": 0,
        "childrenAbove11": 0,
        "children5to11": 0,
        "checkInDate": "",
        "checkOutDate": "",
        "roomPreference": "",
        "specialRequests": "",
    }


def not_travelling_template() -> dict:
    return {
        "isTravelling": False,
        "travelConsistsTwoSegments": "",
        "connectWithNavodayansFirstSegment": "",
        "firstSegmentStartingLocation": "",
        "firstSegmentTravelDate": "",
        "startingLocation": "",
        "startPincode": "",
        "pinDistrict": "",
        "pinState": "",
        "pinTaluk": "",
        "nearestLandmark": "",
        "travelDate": "",
        "travelTime": "",
        "modeOfTransport": "",
        "needParking": "",
        "connectWithNavodayans": "",
        "readyForRideShare": "",
        "vehicleCapacity": 1,
        "groupSize": 1,
        "travelSpecialRequirements": "",
    }


def no_accommodation_template() -> dict:
    template = {
        "planAccommodation": False,
        "accommodation": "",
        "accommodationNeeded": empty_accommodation_needed(),
        "accommodationCapacity": 0,
        "accommodationRemarks": "",
        "hotelRequirements": empty_hotel_requirements(),
    }
    template.update({field: "" for field in PROVIDER_FIELDS})
    return template


def sanitize_personal_info(personal_info: Optional[dict]) -> Optional[dict]:
    if personal_info is None:
        return personal_info
    sanitized = dict(personal_info)
    if sanitized.get("country") != "IN":
        sanitized["stateUT"] = ""
        sanitized["district"] = ""
    elif sanitized.get("stateUT") != "Kerala":
        sanitized["district"] = ""
    return sanitized


def sanitize_professional(professional: Optional[dict]) -> Optional[dict]:
    """Business details only apply to entrepreneurs; students have no professional details."""
    if professional is None:
        return professional
    sanitized = dict(professional)
    profession = sanitized.get("profession")
    if not profession or profession == ["Student"]:
        sanitized["businessDetails"] = ""
        sanitized["professionalDetails"] = ""
    elif isinstance(profession, list) and BUSINESS_OWNER not in profession:
        sanitized["businessDetails"] = ""
    return sanitized


def sanitize_event_attendance(event_attendance: Optional[dict]) -> Optional[dict]:
    if event_attendance is None:
        return event_attendance
    sanitized = dict(event_attendance)
    if not sanitized.get("isAttending"):
        sanitized["attendees"] = empty_attendees()
        sanitized["eventParticipation"] = []
        sanitized["participationDetails"] = ""
    return sanitized


def sanitize_sponsorship(sponsorship: Optional[dict]) -> Optional[dict]:
    if sponsorship is None:
        return sponsorship
    sanitized = dict(sponsorship)
    if not sanitized.get("interestedInSponsorship"):
        sanitized["sponsorshipTier"] = ""
        sanitized["sponsorshipDetails"] = ""
    return sanitized


def sanitize_transportation(transportation: Optional[dict]) -> Optional[dict]:
    """
    Rules, applied in order:

    * not travelling: the whole section collapses to the empty template
    * single-segment travel: first-segment fields are cleared
    * modes other than car / two-wheeler / bus: no parking or ride sharing
    * only "looking-for-transport" carries a group size
    * ride sharing requires connecting with fellow alumni first, and vehicle
      capacity requires agreeing to ride share
    """
    if transportation is None:
        return transportation
    if not transportation.get("isTravelling"):
        return not_travelling_template()

    sanitized = dict(transportation)
    if sanitized.get("travelConsistsTwoSegments") != "yes":
        sanitized["connectWithNavodayansFirstSegment"] = ""
        sanitized["firstSegmentStartingLocation"] = ""
        sanitized["firstSegmentTravelDate"] = ""

    if sanitized.get("modeOfTransport") not in RIDE_SHARE_MODES:
        sanitized["needParking"] = ""
        sanitized["readyForRideShare"] = ""
        sanitized["vehicleCapacity"] = 0
        sanitized["connectWithNavodayans"] = ""

    if sanitized.get("modeOfTransport") != "looking-for-transport":
        sanitized["groupSize"] = 1

    if sanitized.get("connectWithNavodayans") != "yes":
        sanitized["readyForRideShare"] = ""
        sanitized["vehicleCapacity"] = 0

    if sanitized.get("readyForRideShare") != "yes":
        sanitized["vehicleCapacity"] = 0

    return sanitized


def _clear_provider_fields(sanitized: dict):
    for field in PROVIDER_FIELDS:
        sanitized[field] = ""
    sanitized["accommodationCapacity"] = 0


def sanitize_accommodation(accommodation: Optional[dict]) -> Optional[dict]:
    """
    The accommodation type decides which of the three sub-forms survives:
    "provide" keeps the host details, "need" keeps the head count and
    "discount-hotel" keeps the hotel requirements. "not-required" and unknown
    types keep none of them.
    """
    if accommodation is None:
        return accommodation
    if not accommodation.get("planAccommodation"):
        return no_accommodation_template()

    sanitized = dict(accommodation)
    kind = sanitized.get("accommodation")

    if kind == "provide":
        sanitized["accommodationNeeded"] = empty_accommodation_needed()
        sanitized["hotelRequirements"] = empty_hotel_requirements()
    elif kind == "need":
        _clear_provider_fields(sanitized)
        sanitized["hotelRequirements"] = empty_hotel_requirements()
    elif kind == "discount-hotel":
        _clear_provider_fields(sanitized)
        sanitized["accommodationNeeded"] = empty_accommodation_needed()
    else:
        _clear_provider_fields(sanitized)
        sanitized["accommodationNeeded"] = empty_accommodation_needed()
        sanitized["hotelRequirements"] = empty_hotel_requirements()

    return sanitized


def sanitize_optional(optional: Optional[dict]) -> Optional[dict]:
    if optional is None:
        return optional
    sanitized = dict(optional)
    if sanitized.get("tshirtInterest") != "yes":
        sanitized["tshirtSizes"] = {size: 0 for size in TSHIRT_SIZES}
    return sanitized


def sanitize_financial(financial: Optional[dict]) -> Optional[dict]:
    if financial is None:
        return financial
    sanitized = dict(financial)
    # a fee waiver never carries an amount
    if sanitized.get("paymentStatus") == "financial-difficulty":
        sanitized["contributionAmount"] = 0
        sanitized["proposedAmount"] = 0
    return sanitized


SECTION_SANITIZERS = {
    "personalInfo": sanitize_personal_info,
    "professional": sanitize_professional,
    "eventAttendance": sanitize_event_attendance,
    "sponsorship": sanitize_sponsorship,
    "transportation": sanitize_transportation,
    "accommodation": sanitize_accommodation,
    "optional": sanitize_optional,
    "financial": sanitize_financial,
}


def sanitize_form_data(form_data: Optional[dict]) -> Optional[dict]:
    """Sanitize every section present in a structured form."""
    if not form_data:
        return form_data
    sanitized = dict(form_data)
    for section, sanitizer in SECTION_SANITIZERS.items():
        if sanitized.get(section) is not None:
            sanitized[section] = sanitizer(sanitized[section])
    return sanitized


def sanitize_step_data(step: int, step_data: Optional[dict]) -> Optional[dict]:
    if not step_data or not step_data.get("formDataStructured"):
        return step_data
    sanitized = dict(step_data)
    sanitized["formDataStructured"] = sanitize_form_data(sanitized["formDataStructured"])
    return sanitized


def deep_clean_empty_values(value):
    """Recursively drop empty strings, None values and objects left empty."""
    if value is None:
        return value
    if isinstance(value, list):
        cleaned = [deep_clean_empty_values(item) for item in value]
        return [item for item in cleaned if item is not None]
    if isinstance(value, dict):
        cleaned = {}
        for key, item in value.items():
            item = deep_clean_empty_values(item)
            if item == "" or item is None:
                continue
            if isinstance(item, dict) and not item:
                continue
            cleaned[key] = item
        return cleaned
    return value
