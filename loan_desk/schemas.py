"""
Pydantic schemas for loan operation inputs

Field aliases follow the camelCase keys of the back-office forms; snake_case
names are accepted as well.
"""

from decimal import Decimal
from datetime import date
from typing import Any, Dict, List, Optional, Type, TypeVar, Union
from pydantic import BaseModel, Field
from pydantic import ValidationError as SchemaValidationError

from .errors import ValidationError


UploadField = Optional[Union[bytes, str]]

ModelT = TypeVar("ModelT", bound=BaseModel)


class AddressInput(BaseModel):
    house_no: Optional[Union[str, int]] = Field(None, alias="houseNo")
    gali_no: Optional[Union[str, int]] = Field(None, alias="galiNo")
    colony: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    pincode: Optional[Union[str, int]] = None

    class Config:
        populate_by_name = True

    def as_mapping(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class GuarantorInput(BaseModel):
    name: Optional[str] = None
    mobile: Optional[str] = None
    email: Optional[str] = None
    address: Optional[Union[AddressInput, str]] = None
    aadhar_number: Optional[str] = Field(None, alias="aadharNumber")
    relation: Optional[str] = None
    gender: Optional[str] = None
    working_address: Optional[str] = Field(None, alias="workingAddress")
    reference_name: Optional[str] = Field(None, alias="referenceName")
    reference_number: Optional[str] = Field(None, alias="referenceNumber")
    photo: UploadField = None
    aadhaar_front_image: UploadField = Field(None, alias="aadhaarFrontImage")
    aadhaar_back_image: UploadField = Field(None, alias="aadhaarBackImage")
    pan_image: UploadField = Field(None, alias="panImage")

    class Config:
        populate_by_name = True


class DocumentInput(BaseModel):
    type: str
    url: str


class LoanApplication(BaseModel):
    """Loan application as submitted by a shopkeeper or customer"""
    # Applicant
    client_name: Optional[str] = Field(None, alias="clientName")
    client_father_or_spouse_name: Optional[str] = Field(None, alias="clientFatherOrSpouseName")
    client_gender: Optional[str] = Field(None, alias="clientGender")
    client_mobile: Optional[str] = Field(None, alias="clientMobile")
    client_phone: Optional[str] = Field(None, alias="clientPhone")
    client_email: Optional[str] = Field(None, alias="clientEmail")
    client_working_address: Optional[str] = Field(None, alias="clientWorkingAddress")
    client_address: Optional[Union[AddressInput, str]] = Field(None, alias="clientAddress")
    client_aadhar_number: Optional[str] = Field(None, alias="clientAadharNumber")
    client_pan_number: Optional[str] = Field(None, alias="clientPanNumber")
    client_photo: UploadField = Field(None, alias="clientPhoto")
    aadhaar_front_image: UploadField = Field(None, alias="aadhaarFrontImage")
    aadhaar_back_image: UploadField = Field(None, alias="aadhaarBackImage")
    pan_front_image: UploadField = Field(None, alias="panFrontImage")

    guarantor: Optional[GuarantorInput] = None

    # Product
    product_category: Optional[str] = Field(None, alias="productCategory")
    product_name: Optional[str] = Field(None, alias="productName")
    product_company: Optional[str] = Field(None, alias="productCompany")
    price: Optional[Decimal] = None
    serial_number: Optional[str] = Field(None, alias="serialNumber")
    down_payment: Optional[Decimal] = Field(None, alias="downPayment")
    file_charge: Optional[Decimal] = Field(None, alias="fileCharge")
    product_image: UploadField = Field(None, alias="productImage")

    # Financial terms
    loan_amount: Optional[Decimal] = Field(None, alias="loanAmount")
    interest_rate: Optional[Decimal] = Field(None, alias="interestRate")
    tenure: Optional[int] = Field(None, ge=1)
    emi_amount: Optional[Decimal] = Field(None, alias="emiAmount")
    emi_start_date: Optional[date] = Field(None, alias="emiStartDate")

    # Bank
    bank_name: Optional[str] = Field(None, alias="bankName")
    account_number: Optional[str] = Field(None, alias="accountNumber")
    ifsc_code: Optional[str] = Field(None, alias="ifscCode")
    branch_name: Optional[str] = Field(None, alias="branchName")
    payment_mode: Optional[str] = Field(None, alias="paymentMode")
    passbook_image: UploadField = Field(None, alias="passbookImage")

    application_mode: Optional[str] = Field(None, alias="applicationMode")
    customer_id: Optional[str] = Field(None, alias="customerId")
    shopkeeper_id: Optional[str] = Field(None, alias="shopkeeperId")  # Admin submitting on behalf
    documents: List[DocumentInput] = Field(default_factory=list)

    class Config:
        populate_by_name = True

    @property
    def phone(self) -> Optional[str]:
        return self.client_mobile or self.client_phone


class StatusUpdateRequest(BaseModel):
    status: str
    comment: Optional[str] = None


class KycUpdateRequest(BaseModel):
    kyc_status: str = Field(..., alias="kycStatus")

    class Config:
        populate_by_name = True


class PaymentRequest(BaseModel):
    amount: Decimal
    payment_mode: str = Field("cash", alias="paymentMode")
    payment_date: Optional[date] = Field(None, alias="paymentDate")
    transaction_id: Optional[str] = Field(None, alias="transactionId")
    payment_proof: UploadField = Field(None, alias="paymentProof")
    penalty: Optional[Decimal] = None

    class Config:
        populate_by_name = True


class PenaltyRequest(BaseModel):
    amount: Optional[Decimal] = None
    reason: Optional[str] = None


class DueDateRequest(BaseModel):
    next_due_date: date = Field(..., alias="nextDueDate")

    class Config:
        populate_by_name = True


class LoanFilter(BaseModel):
    status: Optional[str] = None
    kyc_status: Optional[str] = Field(None, alias="kycStatus")
    page: int = Field(1, ge=1)
    limit: Optional[int] = Field(None, ge=1)

    class Config:
        populate_by_name = True


def parse_input(model: Type[ModelT], data: Union[ModelT, Dict[str, Any], None]) -> ModelT:
    """
    Validate raw input against a schema

    Raises:
        ValidationError: With one entry per offending field in details
    """
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data or {})
    except SchemaValidationError as e:
        errors = [
            {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
            for err in e.errors()
        ]
        raise ValidationError(f"Invalid {model.__name__} input", {"errors": errors})
