import json
import logging
from functools import wraps

import cloudinary.uploader
from django.conf import settings
from django.core.exceptions import ValidationError
from django.core.paginator import Paginator
from django.db.models import Q
from django.http import Http404, HttpRequest, HttpResponse, JsonResponse
from django.shortcuts import get_object_or_404, redirect, render
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_http_methods, require_POST

from .bold import BoldAdapter
from .exceptions import BusinessRuleError, ProviderError
from .forms import PaymentLinkForm, PayRequestForm, TransactionMethodForm, first_error
from .models import PaymentLink, user_is_admin
from .providers import get_adapter
from .services import (
    create_payment_link,
    delete_payment_link,
    get_checkout_tokens,
    pay_link,
    reconcile_link_status,
)

logger = logging.getLogger(__name__)


def json_error(message: str, status: int = 400, **extra) -> JsonResponse:
    return JsonResponse({"error": message, **extra}, status=status)


def provider_error_response(error: ProviderError) -> JsonResponse:
    if error.retryable:
        return json_error(error.message, status=503, retryable=True)
    return json_error(error.message, status=400)


def api_login_required(view):
    """Like ``login_required`` but answers 401 JSON instead of redirecting."""

    @wraps(view)
    def wrapper(request, *args, **kwargs):
        if not request.user.is_authenticated:
            return json_error("No autorizado", status=401)
        return view(request, *args, **kwargs)

    return wrapper


def parse_json(request: HttpRequest) -> dict:
    try:
        data = json.loads(request.body.decode("utf-8") or "{}")
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise BusinessRuleError("JSON inválido")
    if not isinstance(data, dict):
        raise BusinessRuleError("JSON inválido")
    return data


def serialize_link(link: PaymentLink) -> dict:
    def iso(value):
        return value.isoformat() if value else None

    return {
        "id": str(link.pk),
        "provider": link.provider,
        "providerLinkId": link.provider_link_id,
        "providerUrl": link.provider_url or None,
        "title": link.title,
        "description": link.description or None,
        "amount": link.amount,
        "amountUsd": float(link.amount_usd) if link.amount_usd is not None else None,
        "amountType": link.amount_type,
        "currency": link.currency,
        "logoUrl": link.logo_url or None,
        "callbackUrl": link.callback_url or None,
        "paymentMethods": link.payment_methods,
        "status": link.status,
        "expirationDate": iso(link.expiration_date),
        "transactionId": link.transaction_id,
        "paymentMethod": link.payment_method,
        "payerEmail": link.payer_email,
        "paidAt": iso(link.paid_at),
        "createdAt": iso(link.created_at),
        "updatedAt": iso(link.updated_at),
        "user": {"name": link.user.get_full_name(), "email": link.user.email},
    }


def get_owned_link(request: HttpRequest, pk) -> PaymentLink:
    link = get_object_or_404(PaymentLink.objects.select_related("user"), pk=pk)
    if not link.is_visible_to(request.user):
        raise PermissionError
    return link


@api_login_required
@require_http_methods(["GET", "POST"])
def api_links(request: HttpRequest) -> HttpResponse:
    """List payment links (GET) or create one at the chosen provider (POST)."""
    if request.method == "POST":
        return _create_link(request)

    queryset = PaymentLink.objects.select_related("user")
    if not user_is_admin(request.user):
        queryset = queryset.filter(user=request.user)

    status = request.GET.get("status")
    if status:
        queryset = queryset.filter(status=status)
    provider = request.GET.get("provider")
    if provider:
        queryset = queryset.filter(provider=provider)

    try:
        page_number = max(int(request.GET.get("page", 1)), 1)
        page_size = min(max(int(request.GET.get("pageSize", 10)), 1), 100)
    except ValueError:
        return json_error("Paginación inválida")

    paginator = Paginator(queryset, page_size)
    page = paginator.get_page(page_number)
    return JsonResponse({
        "data": [serialize_link(link) for link in page.object_list],
        "total": paginator.count,
        "page": page.number,
        "pageSize": page_size,
        "totalPages": paginator.num_pages if paginator.count else 0,
    })


def _create_link(request: HttpRequest) -> HttpResponse:
    try:
        form = PaymentLinkForm(parse_json(request))
        if not form.is_valid():
            return json_error(first_error(form))
        link = create_payment_link(request.user, form.cleaned_data)
    except BusinessRuleError as e:
        return json_error(e.message)
    except ProviderError as e:
        logger.error(f"Provider error creating link: {e.message}")
        return provider_error_response(e)
    except Exception as e:
        logger.error(f"Error creating link: {e}", exc_info=True)
        return json_error("Error al crear link de pago", status=500)

    return JsonResponse(serialize_link(link), status=201)


@api_login_required
@require_http_methods(["GET", "DELETE"])
def api_link_detail(request: HttpRequest, pk) -> HttpResponse:
    try:
        link = get_owned_link(request, pk)
    except PermissionError:
        return json_error("Sin permisos", status=403)

    if request.method == "DELETE":
        try:
            delete_payment_link(link)
        except BusinessRuleError as e:
            return json_error(e.message, status=400)
        return JsonResponse({"message": "Link eliminado"})

    reconcile_link_status(link)
    return JsonResponse(serialize_link(link))


@csrf_exempt
@require_http_methods(["GET", "POST"])
def api_pay(request: HttpRequest, link_id) -> HttpResponse:
    """
    Public checkout API.

    GET hands out the Wompi acceptance tokens and public key needed before
    tokenizing; POST creates the transaction for the chosen method.
    """
    link = get_object_or_404(PaymentLink, pk=link_id)

    try:
        if request.method == "GET":
            tokens = get_checkout_tokens(link)
            return JsonResponse({
                "acceptanceToken": tokens.acceptance_token,
                "personalDataToken": tokens.personal_data_token,
                "publicKey": tokens.public_key,
            })

        # Refuse closed links before validating anything else
        link.ensure_payable()

        data = parse_json(request)
        pay_form = PayRequestForm(data)
        if not pay_form.is_valid():
            return json_error(first_error(pay_form))

        method_data = data.get("paymentMethod")
        if not isinstance(method_data, dict):
            return json_error("Método de pago inválido")
        method_form = TransactionMethodForm(method_data)
        if not method_form.is_valid():
            return json_error(first_error(method_form))

        result = pay_link(
            link,
            payment_method=method_form.to_payment_method(description=link.title),
            customer_email=pay_form.cleaned_data["customerEmail"],
            acceptance_token=pay_form.cleaned_data.get("acceptanceToken") or "",
            personal_data_token=pay_form.cleaned_data.get("personalDataToken") or "",
            amount=pay_form.cleaned_data.get("amount"),
        )
    except BusinessRuleError as e:
        return json_error(e.message, status=400, **({"status": e.status} if e.status else {}))
    except ProviderError as e:
        logger.error(f"Wompi transaction error for link {link.pk}: {e.message}")
        return provider_error_response(e)
    except Exception as e:
        logger.error(f"Internal pay API error for link {link.pk}: {e}", exc_info=True)
        return json_error("Error interno del servidor", status=500)

    return JsonResponse({
        "success": True,
        "data": {
            **result.raw,
            "id": result.transaction_id,
            "status": result.status,
            "async_payment_url": result.async_payment_url,
        },
    })


@require_GET
def pay_page(request: HttpRequest, link_id: str) -> HttpResponse:
    """Public payment page; the link is looked up by our id or the provider's."""
    query = Q(provider_link_id=link_id)
    try:
        query |= Q(pk=PaymentLink._meta.pk.to_python(link_id))
    except ValidationError:
        # Not a UUID, so only the provider id can match
        pass
    link = PaymentLink.objects.filter(query).first()
    if not link:
        raise Http404("Link de pago no encontrado")

    reconcile_link_status(link)

    is_wompi = link.provider == PaymentLink.PROVIDER_WOMPI
    context = {
        "link": link,
        "checkout_mode": "checkout" if is_wompi else "redirect",
        "offers_pse": "PSE" in (link.payment_methods or []),
        "public_key": settings.WOMPI_PUBLIC_KEY if is_wompi else "",
        "wompi_api_url": settings.WOMPI_API_URL if is_wompi else "",
    }
    return render(request, "links/pay.html", context)


@require_GET
def pay_callback(request: HttpRequest) -> HttpResponse:
    """Wompi sends the payer back here with ``?id=<transaction id>``."""
    transaction_id = request.GET.get("id", "")
    link = PaymentLink.objects.filter(transaction_id=transaction_id).first() if transaction_id else None
    if not link:
        raise Http404("Transacción no encontrada")
    return redirect("links:pay-page", link_id=str(link.pk))


@api_login_required
@require_GET
def api_bold_payment_methods(request: HttpRequest) -> HttpResponse:
    adapter = get_adapter(BoldAdapter.provider)
    try:
        return JsonResponse(adapter.get_payment_methods())
    except ProviderError as e:
        return provider_error_response(e)
    except Exception as e:
        logger.error(f"Error fetching Bold payment methods: {e}", exc_info=True)
        return json_error("Error al obtener métodos de pago", status=500)


@api_login_required
@require_POST
def api_upload(request: HttpRequest) -> HttpResponse:
    """Upload a link logo to Cloudinary and return its public URL."""
    upload = request.FILES.get("file")
    if not upload:
        return json_error("No se envió ningún archivo")
    if not (upload.content_type or "").startswith("image/"):
        return json_error("El archivo debe ser una imagen")
    if upload.size > 5 * 1024 * 1024:
        return json_error("La imagen no puede superar 5MB")

    try:
        result = cloudinary.uploader.upload(upload, folder=settings.CLOUDINARY_UPLOAD_FOLDER)
    except Exception as e:
        logger.error(f"Logo upload failed: {e}", exc_info=True)
        return json_error("Error al subir la imagen", status=500)
    return JsonResponse({"url": result["secure_url"]})
