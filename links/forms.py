import re

from django import forms
from django.utils import timezone

from .models import PaymentLink

MIN_AMOUNT = 1000


def digits_only(value: str) -> str:
    return re.sub(r"\D", "", value or "")


def first_error(form: forms.Form) -> str:
    for errors in form.errors.values():
        if errors:
            return errors[0]
    return "Datos inválidos"


class PaymentLinkForm(forms.Form):
    """Validates a JSON payload for ``POST /api/links``."""

    title = forms.CharField(min_length=2, max_length=255, error_messages={
        "min_length": "El título debe tener al menos 2 caracteres",
    })
    description = forms.CharField(max_length=100, required=False)
    amount = forms.IntegerField(min_value=MIN_AMOUNT, error_messages={
        "min_value": "El monto mínimo es $1,000 COP",
    })
    amountUsd = forms.DecimalField(max_digits=12, decimal_places=2, required=False)
    amountType = forms.ChoiceField(choices=PaymentLink.AMOUNT_TYPE_CHOICES, required=False)
    logoUrl = forms.URLField(max_length=500, required=False)
    expirationDate = forms.DateTimeField(required=False)
    callbackUrl = forms.URLField(max_length=500, required=False)
    paymentMethods = forms.JSONField(required=False)
    provider = forms.ChoiceField(choices=PaymentLink.PROVIDER_CHOICES, required=False)

    def clean_amountType(self):
        return self.cleaned_data.get("amountType") or PaymentLink.AMOUNT_CLOSE

    def clean_provider(self):
        return self.cleaned_data.get("provider") or PaymentLink.PROVIDER_WOMPI

    def clean_expirationDate(self):
        value = self.cleaned_data.get("expirationDate")
        if value and value <= timezone.now():
            raise forms.ValidationError("La fecha de expiración debe ser futura")
        return value

    def clean(self):
        cleaned = super().clean()
        methods = cleaned.get("paymentMethods")
        provider = cleaned.get("provider")
        if methods in (None, ""):
            cleaned["paymentMethods"] = []
            return cleaned
        if not isinstance(methods, list) or not all(isinstance(m, str) for m in methods):
            self.add_error("paymentMethods", "Debe ser una lista de métodos de pago")
            return cleaned
        if provider:
            allowed = PaymentLink.PAYMENT_METHODS[provider]
            invalid = [m for m in methods if m not in allowed]
            if invalid:
                self.add_error(
                    "paymentMethods",
                    f"Métodos no válidos para {provider}: {', '.join(invalid)}",
                )
            # Keep the caller's order, drop repeats
            cleaned["paymentMethods"] = list(dict.fromkeys(methods))
        return cleaned


class TransactionMethodForm(forms.Form):
    """
    Validates the ``paymentMethod`` object sent to ``POST /api/pay/<id>``.

    Card data never reaches the backend: CARD only carries the token obtained
    from Wompi's tokenization endpoint.
    """

    type = forms.ChoiceField(choices=[("CARD", "CARD"), ("PSE", "PSE"), ("NEQUI", "NEQUI")])
    token = forms.CharField(required=False)
    installments = forms.IntegerField(min_value=1, max_value=36, required=False)
    financial_institution_code = forms.CharField(required=False)
    user_type = forms.IntegerField(min_value=0, max_value=1, required=False)
    user_legal_id_type = forms.CharField(required=False)
    user_legal_id = forms.CharField(required=False)
    payment_description = forms.CharField(max_length=64, required=False)
    phone_number = forms.CharField(required=False)

    def clean(self):
        cleaned = super().clean()
        method = cleaned.get("type")
        if method == "CARD" and not cleaned.get("token"):
            self.add_error("token", "El token de la tarjeta es obligatorio")
        elif method == "PSE":
            if not cleaned.get("financial_institution_code"):
                self.add_error("financial_institution_code", "Selecciona un banco")
            if not cleaned.get("user_legal_id"):
                self.add_error("user_legal_id", "El documento es obligatorio")
        elif method == "NEQUI" and len(digits_only(cleaned.get("phone_number"))) != 10:
            self.add_error("phone_number", "El número de celular debe tener 10 dígitos")
        return cleaned

    def to_payment_method(self, description: str = "") -> dict:
        data = self.cleaned_data
        method = data["type"]
        if method == "CARD":
            return {
                "type": "CARD",
                "token": data["token"],
                "installments": data.get("installments") or 1,
            }
        if method == "PSE":
            return {
                "type": "PSE",
                "user_type": data.get("user_type") or 0,
                "user_legal_id_type": data.get("user_legal_id_type") or "CC",
                "user_legal_id": data["user_legal_id"],
                "financial_institution_code": data["financial_institution_code"],
                "payment_description": (data.get("payment_description") or description)[:64],
            }
        return {"type": "NEQUI", "phone_number": digits_only(data["phone_number"])}


class PayRequestForm(forms.Form):
    customerEmail = forms.EmailField()
    acceptanceToken = forms.CharField(required=False)
    personalDataToken = forms.CharField(required=False)
    amount = forms.IntegerField(min_value=MIN_AMOUNT, required=False)


# Checkout forms, checked before anything leaves the payer's side.


class CardPaymentForm(forms.Form):
    email = forms.EmailField()
    number = forms.CharField()
    exp_month = forms.RegexField(regex=r"^\d{2}$", error_messages={"invalid": "Mes inválido (MM)"})
    exp_year = forms.RegexField(regex=r"^\d{2}$", error_messages={"invalid": "Año inválido (AA)"})
    cvc = forms.RegexField(regex=r"^\d{3,4}$", error_messages={"invalid": "CVC inválido"})
    card_holder = forms.CharField(strip=True)
    installments = forms.IntegerField(min_value=1, max_value=36, required=False)

    def clean_number(self):
        number = digits_only(self.cleaned_data["number"])
        if len(number) < 15:
            raise forms.ValidationError("Número de tarjeta inválido")
        return number

    def clean_exp_month(self):
        month = self.cleaned_data["exp_month"]
        if not 1 <= int(month) <= 12:
            raise forms.ValidationError("Mes inválido (MM)")
        return month


class PSEPaymentForm(forms.Form):
    USER_TYPE_CHOICES = [(0, "Persona natural"), (1, "Persona jurídica")]
    LEGAL_ID_TYPES = [("CC", "CC"), ("CE", "CE"), ("NIT", "NIT"), ("PP", "PP"), ("TI", "TI")]

    email = forms.EmailField()
    financial_institution_code = forms.CharField(error_messages={"required": "Selecciona un banco"})
    user_type = forms.TypedChoiceField(choices=USER_TYPE_CHOICES, coerce=int, required=False, empty_value=0)
    user_legal_id_type = forms.ChoiceField(choices=LEGAL_ID_TYPES, required=False)
    user_legal_id = forms.CharField(error_messages={"required": "El documento es obligatorio"})

    def clean_financial_institution_code(self):
        code = self.cleaned_data["financial_institution_code"]
        # Wompi lists a "0" placeholder entry ("A continuación seleccione su banco")
        if code == "0":
            raise forms.ValidationError("Selecciona un banco")
        return code

    def clean_user_legal_id_type(self):
        return self.cleaned_data.get("user_legal_id_type") or "CC"


class NequiPaymentForm(forms.Form):
    email = forms.EmailField()
    phone_number = forms.CharField()

    def clean_phone_number(self):
        phone = digits_only(self.cleaned_data["phone_number"])
        if len(phone) != 10:
            raise forms.ValidationError("El número de celular debe tener 10 dígitos")
        return phone
