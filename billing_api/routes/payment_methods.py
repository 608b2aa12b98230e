"""Payment method and direct debit contract endpoints."""

from fastapi import APIRouter, Depends, Query, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from billing_api.config import get_settings
from billing_api.database import get_db
from billing_api.middleware.auth import get_current_user, get_optional_user
from billing_api.models import User
from billing_api.schemas import (
    BankListResponse,
    BankResponse,
    CreateContractRequest,
    CreateContractResponse,
    VerifyContractRequest,
    VerifyContractResponse,
    CancelContractResponse,
    ContractCallbackResponse,
    RecoverContractRequest,
    RecoverContractResponse,
    ContractStatusResponse,
    PaymentMethodResponse,
    PaymentMethodList,
    SetDefaultResponse,
    ErrorResponse,
    ValidationErrorResponse,
)
from billing_api.services.contracts import ContractService
from billing_api.services.contract_cookie import get_contract_cookie_codec
from billing_api.services.gateway import Bank, GatewayClient, get_gateway_client
from billing_api.services.signature_cipher import get_signature_cipher

settings = get_settings()

router = APIRouter(
    prefix="/payment-methods",
    tags=["Payment Methods"],
    responses={
        401: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        422: {"model": ValidationErrorResponse},
        502: {"model": ErrorResponse, "description": "Payment gateway unavailable"},
    },
)


def get_contract_service(
    db: AsyncSession = Depends(get_db),
    gateway: GatewayClient = Depends(get_gateway_client),
) -> ContractService:
    """Build the contract service for this request's database session."""
    return ContractService(
        db=db,
        gateway=gateway,
        cipher=get_signature_cipher(),
        cookies=get_contract_cookie_codec(),
        settings=settings,
    )


def _bank_response(bank: Bank) -> BankResponse:
    return BankResponse(
        name=bank.name,
        slug=bank.slug,
        bank_code=bank.bank_code,
        max_daily_amount=bank.max_daily_amount,
        max_daily_count=bank.max_daily_count,
    )


@router.get("", response_model=PaymentMethodList)
async def list_payment_methods(
    user: User = Depends(get_current_user),
    service: ContractService = Depends(get_contract_service),
):
    """List the user's payment methods, newest first."""
    methods = await service.list_payment_methods(user)
    return PaymentMethodList(
        items=[PaymentMethodResponse.model_validate(pm) for pm in methods],
        total=len(methods),
    )


@router.get("/contracts/banks", response_model=BankListResponse)
async def list_banks(
    user: User = Depends(get_current_user),
    service: ContractService = Depends(get_contract_service),
):
    """Banks that can sign a direct debit contract, with their limits."""
    banks = await service.get_banks()
    return BankListResponse(banks=[_bank_response(bank) for bank in banks])


@router.get("/contracts/status", response_model=ContractStatusResponse)
async def get_contract_status(
    user: User = Depends(get_current_user),
    service: ContractService = Depends(get_contract_service),
):
    """
    Summarise whether the user can pay by direct debit.

    `needs_setup` tells the client to start a new contract.
    """
    summary = await service.contract_status(user)
    return ContractStatusResponse(
        status=summary.status,
        contract_id=summary.contract_id,
        can_make_payments=summary.can_make_payments,
        needs_setup=summary.needs_setup,
        message=summary.message,
        expires_at=summary.expires_at,
        verified_at=summary.verified_at,
    )


@router.post("/contracts", response_model=CreateContractResponse, status_code=201)
async def create_contract(
    request_data: CreateContractRequest,
    response: Response,
    user: User = Depends(get_current_user),
    service: ContractService = Depends(get_contract_service),
):
    """
    Request a new direct debit contract.

    Returns the authority, the banks the user can choose from, and the signing
    URL template. Replace `{bank_code}` with the chosen bank and redirect the
    user there. A short-lived cookie lets the bank callback find the user
    again if the session is gone by then.
    """
    user_id = user.id
    creation = await service.create_contract(
        user,
        mobile=request_data.mobile,
        national_id=request_data.national_id,
        expire_at=request_data.expire_at,
        max_daily_count=request_data.max_daily_count,
        max_monthly_count=request_data.max_monthly_count,
        max_amount=request_data.max_amount,
    )

    response.set_cookie(
        key=settings.contract_cookie_name,
        value=get_contract_cookie_codec().encode(creation.payman_authority, user_id),
        max_age=settings.contract_cookie_max_age,
        httponly=True,
        secure=settings.contract_cookie_secure,
        samesite="lax",
        path="/",
    )

    return CreateContractResponse(
        contract_id=creation.payment_method.id,
        payman_authority=creation.payman_authority,
        banks=[_bank_response(bank) for bank in creation.banks],
        signing_url_template=creation.signing_url_template,
    )


@router.get("/contracts/callback", response_model=ContractCallbackResponse)
async def contract_callback(
    request: Request,
    response: Response,
    payman_authority: str = Query(..., min_length=1),
    status: str = Query(...),
    user: User | None = Depends(get_optional_user),
    service: ContractService = Depends(get_contract_service),
):
    """
    Public landing point for the bank redirect after signing.

    Always answers 200; check `success` in the body.
    """
    result = await service.public_callback(
        payman_authority=payman_authority,
        status=status,
        session_user=user,
        cookie_value=request.cookies.get(settings.contract_cookie_name),
    )

    if result.persisted:
        response.delete_cookie(settings.contract_cookie_name, path="/")

    return ContractCallbackResponse(
        success=result.success,
        persisted=result.persisted,
        payment_method_id=result.payment_method_id,
        message=result.message,
    )


@router.post("/contracts/recover", response_model=RecoverContractResponse)
async def recover_contract(
    request_data: RecoverContractRequest,
    user: User = Depends(get_current_user),
    service: ContractService = Depends(get_contract_service),
):
    """Store a contract that was signed and verified but never saved."""
    result = await service.recover_contract(user, request_data.payman_authority)
    return RecoverContractResponse(
        success=True,
        recovered=result.recovered,
        payment_method=PaymentMethodResponse.model_validate(result.payment_method),
        message="Payment method recovered" if result.recovered else "Payment method already exists",
    )


@router.post("/contracts/{contract_id}/verify", response_model=VerifyContractResponse)
async def verify_contract(
    contract_id: str,
    request_data: VerifyContractRequest,
    user: User = Depends(get_current_user),
    service: ContractService = Depends(get_contract_service),
):
    """
    Verify a signed contract and store it as a payment method.

    Verifying the same contract again returns the stored payment method with
    `idempotent: true`.
    """
    result = await service.verify_contract(
        user,
        contract_id=contract_id,
        payman_authority=request_data.payman_authority,
        status=request_data.status,
    )
    return VerifyContractResponse(
        signature=result.signature,
        payment_method=PaymentMethodResponse.model_validate(result.payment_method),
        idempotent=result.idempotent,
    )


@router.delete("/contracts/{payment_method_id}", response_model=CancelContractResponse)
async def cancel_contract(
    payment_method_id: str,
    user: User = Depends(get_current_user),
    service: ContractService = Depends(get_contract_service),
):
    """
    Cancel a direct debit contract and delete its payment method.

    The payment method is removed even if the gateway cannot confirm the
    cancellation; `gateway_cancelled` reports what the gateway said.
    """
    result = await service.cancel_contract(user, payment_method_id)
    return CancelContractResponse(
        cancelled=True,
        payment_method_id=result.payment_method_id,
        gateway_cancelled=result.gateway_cancelled,
        message="Direct debit contract cancelled",
    )


@router.patch("/{payment_method_id}/default", response_model=SetDefaultResponse)
async def set_default_payment_method(
    payment_method_id: str,
    user: User = Depends(get_current_user),
    service: ContractService = Depends(get_contract_service),
):
    """Make an active contract the default payment method."""
    change = await service.set_default(user, payment_method_id)
    return SetDefaultResponse(
        success=True,
        changed=change.changed,
        payment_method_id=change.payment_method_id,
        previous_default_id=change.previous_default_id,
        message="Default payment method updated" if change.changed else "Payment method is already the default",
    )
