"""
orderflow — 配送業者クライアント

配送ラベルの発行を外部の配送 API に依頼する。
CARRIER_API_URL が未設定の場合は、ラベル URL をローカルで組み立てる
(開発・テスト用)。

HTTP 呼び出しは在庫や注文のロックの外で行う。
"""

import logging

import httpx

from .errors import CarrierUnavailable
from .models import Shipment

logger = logging.getLogger(__name__)


class CarrierClient:
    def __init__(
        self,
        api_url: str = "",
        label_base_url: str = "",
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 10.0,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.label_base_url = label_base_url.rstrip("/")
        self.transport = transport
        self.timeout = timeout

    async def create_label(self, shipment: Shipment) -> str:
        """配送ラベルを発行して label_url を返す。"""
        if not self.api_url:
            return f"{self.label_base_url}/{shipment.shipment_id}.pdf"

        async with httpx.AsyncClient(
            timeout=self.timeout, transport=self.transport
        ) as client:
            try:
                resp = await client.post(
                    f"{self.api_url}/labels",
                    json={
                        "shipment_id": shipment.shipment_id,
                        "order_id": shipment.order_id,
                        "carrier": shipment.carrier,
                        "tracking_number": shipment.tracking_number,
                        "weight_kg": shipment.weight_kg,
                        "dimensions": shipment.dimensions.model_dump()
                        if shipment.dimensions
                        else None,
                    },
                )
                resp.raise_for_status()
                return resp.json()["label_url"]
            except (httpx.HTTPError, KeyError, ValueError) as e:
                logger.exception(
                    "Label request failed for shipment %s", shipment.shipment_id
                )
                raise CarrierUnavailable(
                    f"Carrier API could not issue a label: {e}",
                    carrier=shipment.carrier,
                ) from e
