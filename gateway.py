"""Cliente de la pasarela de pago (colaborador externo del núcleo).

PaymentGateway define el contrato: abrir una sesión de checkout y consultar el
estado final de un pago con su metadata. HttpPaymentGateway lo implementa sobre
una API REST compatible con checkout sessions de Stripe, con timeout acotado y
reintentos; si la pasarela no responde se lanza UpstreamUnavailable
(reintentable por el llamador).
"""

import json
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import requests
import structlog

from errors import UpstreamUnavailable

logger = structlog.get_logger(component="gateway")

SUCCEEDED = 'succeeded'
FAILED = 'failed'
PENDING = 'pending'


@dataclass(frozen=True)
class GatewaySession:
    """Sesión abierta en la pasarela: a dónde redirigir y con qué referencia confirmar."""
    redirect_handle: str
    reference: str


@dataclass(frozen=True)
class PaymentStatus:
    """Estado terminal (o pendiente) de un pago y su metadata de ítems."""
    reference: str
    state: str  # succeeded | failed | pending
    amount_cents: int = 0
    currency: str = 'usd'
    metadata: Dict[str, str] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.state == SUCCEEDED


# encode_metadata: Metadata plana de strings como la aceptan las pasarelas.
def encode_metadata(buyer_email: str, profile_ids: List[int], item_prices: List[int],
                    buyer_name: Optional[str] = None, buyer_id: Optional[int] = None) -> Dict[str, str]:
    metadata = {
        'buyer_email': buyer_email,
        'profile_ids': json.dumps(list(profile_ids)),
        'item_prices': json.dumps(list(item_prices)),
    }
    if buyer_name:
        metadata['buyer_name'] = buyer_name
    if buyer_id is not None:
        metadata['buyer_id'] = str(buyer_id)
    return metadata


# decode_int_list: Lee una lista JSON de enteros desde la metadata; None si es inválida.
def decode_int_list(raw: Optional[str]) -> Optional[List[int]]:
    if not raw:
        return None
    try:
        values = json.loads(raw)
    except (TypeError, ValueError):
        return None
    if not isinstance(values, list):
        return None
    try:
        return [int(v) for v in values]
    except (TypeError, ValueError):
        return None


class PaymentGateway(ABC):
    """Contrato mínimo que el núcleo consume de la pasarela."""

    @abstractmethod
    def create_session(self, amount_cents: int, currency: str, metadata: Dict[str, str],
                       line_items: Optional[List[Tuple[str, int]]] = None) -> GatewaySession:
        ...

    @abstractmethod
    def get_status(self, reference: str) -> PaymentStatus:
        ...


class HttpPaymentGateway(PaymentGateway):
    """Pasarela HTTP con reintentos y timeout por petición.

    Los reintentos cubren errores de red, 429 y 5xx. La creación envía un
    Idempotency-Key para que reintentar no abra dos sesiones.
    """
    def __init__(self, base_url: str, secret_key: str, success_url: str, cancel_url: str,
                 timeout: float = 5.0, max_retries: int = 2, backoff: float = 0.2,
                 http: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip('/')
        self.secret_key = secret_key
        self.success_url = success_url
        self.cancel_url = cancel_url
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff = backoff
        self.http = http or requests.Session()

    @classmethod
    def from_settings(cls, settings) -> 'HttpPaymentGateway':
        return cls(
            base_url=settings.gateway_url,
            secret_key=settings.gateway_secret_key,
            success_url=settings.success_url,
            cancel_url=settings.cancel_url,
            timeout=settings.request_timeout,
            max_retries=settings.max_retries,
        )

    # _request: Ejecuta la petición con reintentos; UpstreamUnavailable si se agotan.
    def _request(self, method: str, path: str, data: Optional[Dict[str, str]] = None,
                 idempotency_key: Optional[str] = None) -> requests.Response:
        url = f"{self.base_url}{path}"
        headers = {}
        if idempotency_key:
            headers['Idempotency-Key'] = idempotency_key
        last_error = None
        for attempt in range(self.max_retries + 1):
            try:
                resp = self.http.request(method, url, data=data, headers=headers,
                                         auth=(self.secret_key, ''), timeout=self.timeout)
            except requests.RequestException as e:
                last_error = str(e)
            else:
                if resp.status_code < 500 and resp.status_code != 429:
                    return resp
                last_error = f"HTTP {resp.status_code}"
            logger.warning("gateway_request_failed", method=method, path=path, attempt=attempt + 1, error=last_error)
            if attempt < self.max_retries:
                time.sleep(self.backoff * (attempt + 1))
        raise UpstreamUnavailable('Payment gateway', last_error or '')

    def create_session(self, amount_cents: int, currency: str, metadata: Dict[str, str],
                       line_items: Optional[List[Tuple[str, int]]] = None) -> GatewaySession:
        items = line_items or [('Contact reveal', amount_cents)]
        data = {
            'mode': 'payment',
            'success_url': self.success_url,
            'cancel_url': self.cancel_url,
        }
        if metadata.get('buyer_email'):
            data['customer_email'] = metadata['buyer_email']
        for i, (name, unit_amount) in enumerate(items):
            data[f'line_items[{i}][price_data][currency]'] = currency
            data[f'line_items[{i}][price_data][unit_amount]'] = str(unit_amount)
            data[f'line_items[{i}][price_data][product_data][name]'] = name
            data[f'line_items[{i}][quantity]'] = '1'
        for key, value in metadata.items():
            data[f'metadata[{key}]'] = value

        resp = self._request('POST', '/v1/checkout/sessions', data=data, idempotency_key=str(uuid.uuid4()))
        if resp.status_code >= 400:
            logger.error("gateway_session_rejected", status=resp.status_code, body=resp.text[:300])
            raise UpstreamUnavailable('Payment gateway', f"HTTP {resp.status_code}")
        body = resp.json()
        logger.info("gateway_session_created", reference=body.get('id'), amount_cents=amount_cents)
        return GatewaySession(redirect_handle=body.get('url') or '', reference=body['id'])

    def get_status(self, reference: str) -> PaymentStatus:
        resp = self._request('GET', f'/v1/checkout/sessions/{reference}')
        if resp.status_code == 404:
            # Referencia desconocida para la pasarela: nunca puede producir una orden.
            return PaymentStatus(reference=reference, state=FAILED)
        if resp.status_code >= 400:
            raise UpstreamUnavailable('Payment gateway', f"HTTP {resp.status_code}")
        body = resp.json()
        return PaymentStatus(
            reference=reference,
            state=_map_state(body),
            amount_cents=int(body.get('amount_total') or 0),
            currency=(body.get('currency') or 'usd').lower(),
            metadata={str(k): str(v) for k, v in (body.get('metadata') or {}).items()},
        )


# _map_state: Traduce el estado de la pasarela a succeeded | failed | pending.
def _map_state(body: Dict) -> str:
    payment_status = body.get('payment_status')
    status = body.get('status')
    if payment_status in ('paid', 'no_payment_required'):
        return SUCCEEDED
    if status in ('expired', 'canceled'):
        return FAILED
    # Sesión abierta, o cerrada con un método asíncrono cuyo cobro aún no llega.
    return PENDING
