"""
Korea Investment & Securities REST client with error handling.
"""
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional

import pytz
import requests
from loguru import logger

from gap_pullback.broker import BrokerClient
from gap_pullback.exceptions import BrokerClientError, BrokerError, BrokerTransientError
from gap_pullback.kis_auth import KisAuth
from gap_pullback.logging_utils import log_order
from gap_pullback.models import (
    OrderbookLevel,
    Orderbook,
    OrderDetail,
    OrderResponse,
    Quote,
    TradeSide,
)

QUOTE_PATH = "/uapi/domestic-stock/v1/quotations/inquire-price"
ORDERBOOK_PATH = "/uapi/domestic-stock/v1/quotations/inquire-asking-price-exp-ccn"
BALANCE_PATH = "/uapi/domestic-stock/v1/trading/inquire-balance"
BUYABLE_PATH = "/uapi/domestic-stock/v1/trading/inquire-psbl-order"
ORDER_PATH = "/uapi/domestic-stock/v1/trading/order-cash"
ORDER_DETAIL_PATH = "/uapi/domestic-stock/v1/trading/inquire-daily-ccld"

# hts_avls is reported in units of 100 million won
MARKET_CAP_UNIT = Decimal("100000000")
ORDERBOOK_DEPTH = 3


def _decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None


def _int(value: Any) -> int:
    number = _decimal(value)
    return int(number) if number is not None else 0


class KisClient(BrokerClient):
    """
    BrokerClient backed by the KIS Open API.
    """

    name = "kis"

    def __init__(
        self,
        config: Dict,
        session: Optional[requests.Session] = None,
        now_fn: Optional[Callable[[], datetime]] = None
    ):
        """
        Initialize KIS client.

        Args:
            config: The 'kis' configuration section
            session: Optional HTTP session (shared with the token manager)
            now_fn: Market-local clock used for order-date queries
        """
        self.config = config
        self.base_url = config.get('base_url', 'https://openapi.koreainvestment.com:9443').rstrip('/')
        self.app_key = config.get('app_key') or ''
        self.app_secret = config.get('app_secret') or ''
        self.account_number = config.get('account_number') or ''
        self.account_product_code = config.get('account_product_code', '01')
        self.production = bool(config.get('production', True))
        self.timeout_seconds = config.get('timeout_seconds', 10)
        self.timezone = pytz.timezone(config.get('timezone', 'Asia/Seoul'))
        self._now_fn = now_fn

        self.session = session or requests.Session()
        self.auth = KisAuth(
            base_url=self.base_url,
            app_key=self.app_key,
            app_secret=self.app_secret,
            session=self.session,
            timeout_seconds=self.timeout_seconds,
            refresh_buffer_minutes=config.get('token_refresh_buffer_minutes', 30),
            max_attempts=config.get('token_max_attempts', 3),
            backoff_seconds=config.get('token_backoff_seconds', 1.0),
        )

        logger.info(
            f"KisClient initialized | {self.base_url} | "
            f"Mode: {'production' if self.production else 'paper'}, "
            f"Configured: {self.is_configured()}"
        )

    def is_configured(self) -> bool:
        return bool(self.app_key and self.app_secret and self.account_number)

    def warm_up(self) -> bool:
        if not self.is_configured():
            return False
        try:
            self.auth.get_access_token()
            return True
        except BrokerError as e:
            logger.error(f"Broker warm-up failed: {e}")
            return False

    def close(self) -> None:
        self.auth.revoke()
        self.session.close()

    # -- transport --------------------------------------------------------------

    def _market_now(self) -> datetime:
        if self._now_fn is not None:
            return self._now_fn()
        return datetime.now(self.timezone)

    def _tr_id(self, production_id: str) -> str:
        """Paper trading uses the V-prefixed transaction ids."""
        if self.production:
            return production_id
        return "V" + production_id[1:]

    def _headers(self, tr_id: str) -> Dict[str, str]:
        return {
            'content-type': 'application/json; charset=utf-8',
            'authorization': f"Bearer {self.auth.get_access_token()}",
            'appkey': self.app_key,
            'appsecret': self.app_secret,
            'tr_id': tr_id,
            'custtype': 'P',
        }

    def _request(
        self,
        method: str,
        path: str,
        tr_id: str,
        params: Optional[Dict] = None,
        body: Optional[Dict] = None
    ) -> Dict[str, Any]:
        """
        Issue one API call.

        Returns:
            Decoded JSON body

        Raises:
            BrokerTransientError: Timeout, connection failure, 429 or 5xx
            BrokerClientError: Other 4xx
        """
        try:
            response = self.session.request(
                method,
                f"{self.base_url}{path}",
                headers=self._headers(tr_id),
                params=params,
                json=body,
                timeout=self.timeout_seconds
            )
        except (requests.Timeout, requests.ConnectionError) as e:
            raise BrokerTransientError(f"{type(e).__name__}: {e}") from e

        status = response.status_code
        if status == 401:
            # Next call re-issues the token
            self.auth.invalidate()
        if status == 429 or status >= 500:
            raise BrokerTransientError(f"HTTP {status} from {path}")
        if status >= 400:
            raise BrokerClientError(f"HTTP {status} from {path}: {response.text[:200]}", status)
        return response.json()

    def _get_output(self, path: str, tr_id: str, params: Dict, context: str) -> Optional[Dict]:
        if not self.is_configured():
            logger.debug(f"Skipping {context}: broker not configured")
            return None
        try:
            data = self._request('GET', path, tr_id, params=params)
        except BrokerError as e:
            logger.error(f"Error {context}: {e}")
            return None
        if data.get('rt_cd') != '0':
            logger.warning(f"Broker rejected {context}: {data.get('msg_cd')} {data.get('msg1')}")
            return None
        return data

    # -- market data ------------------------------------------------------------

    def get_quote(self, code: str) -> Optional[Quote]:
        data = self._get_output(
            QUOTE_PATH,
            'FHKST01010100',
            {'FID_COND_MRKT_DIV_CODE': 'J', 'FID_INPUT_ISCD': code},
            f"fetching quote for {code}"
        )
        if data is None:
            return None

        output = data.get('output') or {}
        current = _decimal(output.get('stck_prpr'))
        if current is None:
            logger.warning(f"Quote for {code} has no current price")
            return None

        market_cap = _decimal(output.get('hts_avls'))
        return Quote(
            code=code,
            current_price=current,
            open_price=_decimal(output.get('stck_oprc')) or Decimal("0"),
            high_price=_decimal(output.get('stck_hgpr')) or current,
            low_price=_decimal(output.get('stck_lwpr')) or current,
            prev_close=_decimal(output.get('stck_sdpr')) or Decimal("0"),
            volume=_int(output.get('acml_vol')),
            trade_value=_decimal(output.get('acml_tr_pbmn')),
            market_cap=market_cap * MARKET_CAP_UNIT if market_cap is not None else None,
            buy_volume=_int(output.get('shnu_cntg_smtn')),
            sell_volume=_int(output.get('seln_cntg_smtn')),
        )

    def get_orderbook(self, code: str) -> Optional[Orderbook]:
        data = self._get_output(
            ORDERBOOK_PATH,
            'FHKST01010200',
            {'FID_COND_MRKT_DIV_CODE': 'J', 'FID_INPUT_ISCD': code},
            f"fetching orderbook for {code}"
        )
        if data is None:
            return None

        output = data.get('output1') or {}
        asks: List[OrderbookLevel] = []
        bids: List[OrderbookLevel] = []
        for level in range(1, ORDERBOOK_DEPTH + 1):
            ask = _decimal(output.get(f'askp{level}'))
            bid = _decimal(output.get(f'bidp{level}'))
            if ask:
                asks.append(OrderbookLevel(price=ask, quantity=_int(output.get(f'askp_rsqn{level}'))))
            if bid:
                bids.append(OrderbookLevel(price=bid, quantity=_int(output.get(f'bidp_rsqn{level}'))))

        return Orderbook(
            code=code,
            asks=asks,
            bids=bids,
            total_ask_quantity=_int(output.get('total_askp_rsqn')),
            total_bid_quantity=_int(output.get('total_bidp_rsqn')),
        )

    # -- account ----------------------------------------------------------------

    def _account_params(self) -> Dict[str, str]:
        return {'CANO': self.account_number, 'ACNT_PRDT_CD': self.account_product_code}

    def get_available_cash(self) -> Optional[Decimal]:
        params = self._account_params()
        params.update({
            'AFHR_FLPR_YN': 'N',
            'OFL_YN': '',
            'INQR_DVSN': '02',
            'UNPR_DVSN': '01',
            'FUND_STTL_ICLD_YN': 'N',
            'FNCG_AMT_AUTO_RDPT_YN': 'N',
            'PRCS_DVSN': '00',
            'CTX_AREA_FK100': '',
            'CTX_AREA_NK100': '',
        })
        data = self._get_output(BALANCE_PATH, self._tr_id('TTTC8434R'), params, "fetching balance")
        if data is None:
            return None

        summaries = data.get('output2') or []
        if not summaries:
            logger.warning("Balance response has no account summary")
            return None
        return _decimal(summaries[0].get('nxdy_excc_amt'))

    def get_buyable_quantity(self, code: str, price: Decimal) -> Optional[int]:
        params = self._account_params()
        params.update({
            'PDNO': code,
            'ORD_UNPR': format(price, 'f'),
            'ORD_DVSN': '01',
            'CMA_EVLU_AMT_ICLD_YN': 'N',
            'OVRS_ICLD_YN': 'N',
        })
        data = self._get_output(
            BUYABLE_PATH, self._tr_id('TTTC8908R'), params, f"fetching buyable quantity for {code}"
        )
        if data is None:
            return None
        output = data.get('output') or {}
        if output.get('max_buy_qty') in (None, ''):
            return None
        return _int(output.get('max_buy_qty'))

    # -- orders -----------------------------------------------------------------

    def place_order(
        self,
        code: str,
        quantity: int,
        side: TradeSide,
        price: Optional[Decimal] = None
    ) -> Optional[OrderResponse]:
        if not self.is_configured():
            logger.error(f"Cannot place {side.value} order for {code}: broker not configured")
            return None

        tr_id = self._tr_id('TTTC0802U' if side == TradeSide.BUY else 'TTTC0801U')
        body = self._account_params()
        body.update({
            'PDNO': code,
            'ORD_DVSN': '01' if price is None else '00',
            'ORD_QTY': str(quantity),
            'ORD_UNPR': '0' if price is None else format(price, 'f'),
        })

        log_order(f"SUBMIT_{side.value}", code, quantity, price=price or 'MARKET')
        try:
            data = self._request('POST', ORDER_PATH, tr_id, body=body)
        except BrokerError as e:
            logger.error(f"Order request failed for {code}: {e}")
            return None

        success = data.get('rt_cd') == '0'
        output = data.get('output') or {}
        response = OrderResponse(
            success=success,
            order_id=output.get('ODNO') if success else None,
            message=f"{data.get('msg_cd', '')} {data.get('msg1', '')}".strip(),
        )
        log_order(
            f"{'ACCEPTED' if success else 'REJECTED'}_{side.value}",
            code,
            quantity,
            order_id=response.order_id,
            message=response.message
        )
        return response

    def get_order_detail(self, order_id: str) -> Optional[OrderDetail]:
        today = self._market_now().strftime('%Y%m%d')
        params = self._account_params()
        params.update({
            'INQR_STRT_DT': today,
            'INQR_END_DT': today,
            'SLL_BUY_DVSN_CD': '00',
            'INQR_DVSN': '00',
            'PDNO': '',
            'CCLD_DVSN': '00',
            'ORD_GNO_BRNO': '',
            'ODNO': order_id,
            'INQR_DVSN_3': '00',
            'INQR_DVSN_1': '',
            'CTX_AREA_FK100': '',
            'CTX_AREA_NK100': '',
        })
        data = self._get_output(
            ORDER_DETAIL_PATH, self._tr_id('TTTC8001R'), params, f"fetching order {order_id}"
        )
        if data is None:
            return None

        for row in data.get('output1') or []:
            if row.get('odno') != order_id:
                continue
            return OrderDetail(
                order_id=order_id,
                filled_quantity=_int(row.get('tot_ccld_qty')),
                average_price=_decimal(row.get('avg_prvs')),
            )
        return None
