"""
Shipping address and customer normalization.

Checkout clients send the shipping address either as a structured object
(`addressLine1`, `city`, `pinCode`, ...) or as a single freeform string
("12 Park Rd, Near Lake, Pune, MH, 411001"). Both are turned into a
ShippingRecord whose fields are never empty: anything missing is filled in
from the configured default recipient profile.
"""
import re
from enum import Enum
from typing import Any, List, Mapping, Optional, Union

from pydantic import BaseModel, Field, field_validator

from shared.utils import Settings, settings as default_settings

PINCODE_RUN = re.compile(r"\d{6}")
INVALID_PINCODE = "000000"


class PincodePolicy(str, Enum):
    # LENIENT keeps whatever the extractor found; STRICT only keeps a
    # 6-character code that is not the all-zero placeholder.
    LENIENT = "lenient"
    STRICT = "strict"


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value).strip()


class StructuredAddress(BaseModel):
    address_line1: Optional[str] = Field(None, alias="addressLine1")
    address: Optional[str] = None  # legacy single-line field
    address_line2: Optional[str] = Field(None, alias="addressLine2")
    city: Optional[str] = None
    state: Optional[str] = None
    pin_code: Optional[str] = Field(None, alias="pinCode")
    pincode: Optional[str] = None  # legacy spelling
    name: Optional[str] = None
    phone: Optional[str] = None

    @field_validator("*", mode="before")
    def coerce_text(cls, v):
        return _text(v)

    class Config:
        populate_by_name = True
        extra = "ignore"


class FreeformAddress(BaseModel):
    text: str


AddressInput = Union[StructuredAddress, FreeformAddress]


class CustomerInput(BaseModel):
    name: Optional[str] = None
    last_name: Optional[str] = Field(None, alias="lastName")
    email: Optional[str] = None
    phone: Optional[str] = None

    @field_validator("*", mode="before")
    def coerce_text(cls, v):
        return _text(v)

    class Config:
        populate_by_name = True
        extra = "ignore"


class CustomerContact(BaseModel):
    first_name: str
    last_name: str = ""
    full_name: str
    email: str
    phone: str


class DefaultRecipient(BaseModel):
    name: str
    address_line1: str
    city: str
    state: str
    pincode: str
    phone: str
    email: str
    country: str

    @classmethod
    def from_settings(cls, config: Settings = default_settings) -> "DefaultRecipient":
        return cls(
            name=config.DEFAULT_CUSTOMER_NAME,
            address_line1=config.DEFAULT_CUSTOMER_ADDRESS,
            city=config.DEFAULT_CUSTOMER_CITY,
            state=config.DEFAULT_CUSTOMER_STATE,
            pincode=config.DEFAULT_CUSTOMER_PINCODE,
            phone=config.DEFAULT_CUSTOMER_PHONE,
            email=config.DEFAULT_CUSTOMER_EMAIL,
            country=config.SHIPPING_COUNTRY,
        )


class ShippingRecord(BaseModel):
    name: str
    address_line1: str
    address_line2: Optional[str] = None
    city: str
    state: str
    pincode: str
    phone: str
    email: str
    country: str
    defaulted_fields: List[str] = []

    @property
    def used_defaults(self) -> bool:
        return "pincode" in self.defaulted_fields

    @property
    def street(self) -> str:
        if self.address_line2:
            return f"{self.address_line1}, {self.address_line2}"
        return self.address_line1


def classify_address(raw: Any) -> Optional[AddressInput]:
    """Pick the address variant from the shape of the raw payload."""
    if raw is None:
        return None
    if isinstance(raw, (StructuredAddress, FreeformAddress)):
        return raw
    if isinstance(raw, str):
        return FreeformAddress(text=raw)
    if isinstance(raw, Mapping):
        return StructuredAddress(**{str(k): v for k, v in raw.items()})
    return None


def _fields_from_structured(address: StructuredAddress) -> dict:
    return {
        "address_line1": address.address_line1 or address.address or "",
        "address_line2": address.address_line2 or "",
        "city": address.city or "",
        "state": address.state or "",
        "pincode": address.pin_code or address.pincode or "",
        "name": address.name or "",
        "phone": address.phone or "",
    }


def _fields_from_freeform(address: FreeformAddress) -> dict:
    parts = [part.strip() for part in address.text.split(",")]
    fields = {
        "address_line1": parts[0],
        "address_line2": parts[1] if len(parts) >= 2 else "",
        "city": parts[-3] if len(parts) >= 3 else "",
        "state": parts[-2] if len(parts) >= 2 else "",
        "pincode": "",
        "name": "",
        "phone": "",
    }
    match = PINCODE_RUN.search(parts[-1])
    if match:
        fields["pincode"] = match.group(0)
    return fields


def accept_pincode(candidate: Optional[str], policy: PincodePolicy) -> bool:
    if not candidate:
        return False
    if policy == PincodePolicy.STRICT:
        return len(candidate) == 6 and candidate != INVALID_PINCODE
    return True


def _parse_customer(customer: Any) -> CustomerInput:
    if isinstance(customer, CustomerInput):
        return customer
    if isinstance(customer, Mapping):
        return CustomerInput(**{str(k): v for k, v in customer.items()})
    return CustomerInput()


def normalize_customer(customer: Any, defaults: Optional[DefaultRecipient] = None) -> CustomerContact:
    defaults = defaults or DefaultRecipient.from_settings()
    parsed = _parse_customer(customer)

    first_name = parsed.name or defaults.name
    last_name = parsed.last_name or ""
    return CustomerContact(
        first_name=first_name,
        last_name=last_name,
        full_name=f"{first_name} {last_name}".strip(),
        email=parsed.email or defaults.email,
        phone=parsed.phone or defaults.phone,
    )


def normalize_shipping(
    address: Any,
    customer: Any = None,
    defaults: Optional[DefaultRecipient] = None,
    policy: PincodePolicy = PincodePolicy.LENIENT,
) -> ShippingRecord:
    """
    Build a fully populated ShippingRecord. Never raises.

    The recipient name and phone come from the address when it carries
    them, then from the customer details, then from the default profile.
    Country is always the configured shipping country.
    """
    defaults = defaults or DefaultRecipient.from_settings()
    parsed = classify_address(address)
    if isinstance(parsed, StructuredAddress):
        fields = _fields_from_structured(parsed)
    elif isinstance(parsed, FreeformAddress):
        fields = _fields_from_freeform(parsed)
    else:
        fields = {}

    customer_input = _parse_customer(customer)
    contact = normalize_customer(customer_input, defaults)

    defaulted: List[str] = []

    def pick(key: str, *candidates: Optional[str]) -> str:
        for candidate in candidates:
            if candidate:
                return candidate
        defaulted.append(key)
        return getattr(defaults, key)

    name = pick("name", fields.get("name"), contact.full_name if customer_input.name else None)
    phone = pick("phone", fields.get("phone"), customer_input.phone)
    email = pick("email", customer_input.email)

    pincode = fields.get("pincode")
    if not accept_pincode(pincode, policy):
        pincode = None

    return ShippingRecord(
        name=name,
        address_line1=pick("address_line1", fields.get("address_line1")),
        address_line2=fields.get("address_line2") or None,
        city=pick("city", fields.get("city")),
        state=pick("state", fields.get("state")),
        pincode=pick("pincode", pincode),
        phone=phone,
        email=email,
        country=defaults.country,
        defaulted_fields=defaulted,
    )
