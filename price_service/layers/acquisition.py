"""
Layer 1 – 数据获取层
  StockQuoteSource : 实时行情接口，每次请求一个代码（JSON）
  FundNavSource    : 批量净值文件，一次下载覆盖全部基金（分隔符文本）

两个数据源都只做一次尝试，重试由调用方决定；响应在边界处按模式校验，
任何不符合预期的内容都归类为 UpstreamError。请求前先占用数据源限流配额，
超限时抛出 RateLimitError（UpstreamError 子类）。
"""

import asyncio
import logging
import re
import time
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Union

import httpx
from pydantic import BaseModel, Field, ValidationError

from price_service.config import settings
from price_service.errors import NotFoundError, PricingError, UpstreamError
from price_service.layers.rate_limit import RateLimiter
from price_service.models.price import FundNavRecord

logger = logging.getLogger(__name__)

_EXCHANGE_PREFIX = "NSE:"


# ── HTTP 公共部分 ─────────────────────────────────────────
_http_client: Optional[httpx.AsyncClient] = None


async def init_http_client(**kwargs) -> httpx.AsyncClient:
    """创建进程内共享的 AsyncClient（连接池复用），应用启动时调用"""
    global _http_client
    if _http_client is None:
        _http_client = httpx.AsyncClient(follow_redirects=True, **kwargs)
        logger.info("✅ HTTP 客户端已创建")
    return _http_client


async def close_http_client():
    global _http_client
    if _http_client is not None:
        await _http_client.aclose()
        _http_client = None
        logger.info("HTTP 客户端已关闭")


def get_http_client() -> Optional[httpx.AsyncClient]:
    """获取共享 AsyncClient（未初始化时为 None）"""
    return _http_client


class _HttpSource:
    """
    数据源公共部分：限流、客户端选择、连通性检查

    客户端优先级：构造时注入 → 进程共享 → 每次请求临时创建
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient],
        timeout: float,
        limiter: Optional[RateLimiter] = None,
    ):
        self._client = client
        self.timeout = timeout
        self.limiter = limiter

    async def _send(self, method: str, url: str, timeout: float, **kwargs) -> httpx.Response:
        client = self._client or get_http_client()
        if client is not None:
            return await client.request(method, url, timeout=timeout, **kwargs)
        async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as temp:
            return await temp.request(method, url, **kwargs)

    async def _get(self, url: str, instrument_id: Optional[str] = None, **kwargs) -> httpx.Response:
        if self.limiter is not None:
            self.limiter.acquire(instrument_id)
        response = await self._send("GET", url, self.timeout, **kwargs)
        response.raise_for_status()
        return response

    async def check(self, timeout: Optional[float] = None) -> Dict[str, Any]:
        """HEAD 请求检查数据源连通性，不占用限流配额"""
        start = time.perf_counter()
        try:
            response = await self._send(
                "HEAD", self.url, timeout or settings.SOURCE_HEALTH_TIMEOUT
            )
        except httpx.HTTPError as exc:
            return {"status": "down", "error": str(exc) or exc.__class__.__name__}
        elapsed_ms = round((time.perf_counter() - start) * 1000, 1)
        if response.status_code >= 500:
            return {
                "status": "down",
                "response_time_ms": elapsed_ms,
                "error": f"HTTP {response.status_code}",
            }
        return {"status": "up", "response_time_ms": elapsed_ms}


# ── 实时行情 ──────────────────────────────────────────────

class _QuoteInfo(BaseModel):
    lastPrice: Decimal = Field(gt=0, allow_inf_nan=False)


class _QuotePayload(BaseModel):
    priceInfo: Optional[_QuoteInfo] = None
    info: Optional[_QuoteInfo] = None

    @property
    def last_price(self) -> Optional[Decimal]:
        for section in (self.priceInfo, self.info):
            if section is not None:
                return section.lastPrice
        return None


def normalize_ticker(ticker: str) -> str:
    ticker = (ticker or "").strip().upper()
    if ticker.startswith(_EXCHANGE_PREFIX):
        ticker = ticker[len(_EXCHANGE_PREFIX):]
    return ticker


def parse_quote_payload(payload, ticker: str) -> Decimal:
    """校验行情 JSON，返回最新价；格式不符抛 UpstreamError"""
    if not isinstance(payload, dict):
        raise UpstreamError(f"行情响应格式异常: {ticker}", ticker)
    try:
        quote = _QuotePayload.model_validate(payload)
    except ValidationError as exc:
        raise UpstreamError(
            f"行情响应缺少有效价格 {ticker}: {exc.error_count()} 处校验失败", ticker
        ) from exc
    price = quote.last_price
    if price is None:
        raise UpstreamError(f"行情响应缺少价格字段: {ticker}", ticker)
    return price


class StockQuoteSource(_HttpSource):
    """实时行情数据源"""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        url: Optional[str] = None,
        timeout: Optional[float] = None,
        limiter: Optional[RateLimiter] = None,
    ):
        super().__init__(client, timeout or settings.STOCK_QUOTE_TIMEOUT, limiter)
        self.url = url or settings.STOCK_QUOTE_URL

    async def fetch_one(self, ticker: str) -> Decimal:
        symbol = normalize_ticker(ticker)
        if not symbol:
            raise UpstreamError("股票代码为空", ticker)
        try:
            response = await self._get(
                self.url,
                instrument_id=ticker,
                params={"symbol": symbol},
                headers={
                    "User-Agent": settings.STOCK_QUOTE_USER_AGENT,
                    "Accept": "application/json",
                },
            )
            payload = response.json()
        except httpx.TimeoutException as exc:
            raise UpstreamError(f"行情请求超时: {symbol}", ticker) from exc
        except httpx.HTTPStatusError as exc:
            raise UpstreamError(
                f"行情接口返回 {exc.response.status_code}: {symbol}", ticker
            ) from exc
        except httpx.HTTPError as exc:
            raise UpstreamError(f"行情请求失败 {symbol}: {exc}", ticker) from exc
        except ValueError as exc:
            raise UpstreamError(f"行情响应不是合法 JSON: {symbol}", ticker) from exc

        price = parse_quote_payload(payload, ticker)
        logger.debug(f"行情获取成功 {symbol}: {price}")
        return price

    async def fetch_many(
        self, tickers: List[str]
    ) -> Dict[str, Union[Decimal, PricingError]]:
        """逐个代码独立请求，单个失败不影响其它代码"""
        results = await asyncio.gather(
            *(self.fetch_one(t) for t in tickers), return_exceptions=True
        )
        out: Dict[str, Union[Decimal, PricingError]] = {}
        for ticker, result in zip(tickers, results):
            if isinstance(result, PricingError) or not isinstance(result, BaseException):
                out[ticker] = result
            elif isinstance(result, Exception):
                logger.error(f"行情请求出现未预期错误 {ticker}: {result}", exc_info=result)
                out[ticker] = UpstreamError(f"行情请求异常 {ticker}: {result}", ticker)
            else:
                raise result
        return out


# ── 批量净值 ──────────────────────────────────────────────

_FIELD_SPLIT = re.compile(r"[;|]")
_NOT_APPLICABLE = {"N.A.", "NA", "N/A", "-"}
_DATE_FORMATS = ("%d-%b-%Y", "%d-%m-%Y", "%Y-%m-%d")


def _parse_nav(raw: str) -> Optional[Decimal]:
    raw = raw.strip()
    if not raw or raw.upper() in _NOT_APPLICABLE:
        return None
    try:
        nav = Decimal(raw.replace(",", ""))
    except InvalidOperation:
        return None
    if not nav.is_finite() or nav <= 0:
        return None
    return nav


def _parse_date(raw: str) -> Optional[date]:
    raw = raw.strip()
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(raw, fmt).date()
        except ValueError:
            continue
    return None


def parse_nav_file(text: str) -> List[FundNavRecord]:
    """
    逐行解析批量净值文件

    行格式：schemeCode;isin1;isin2;schemeName;nav;date（也接受 | 分隔）。
    表头、分类标题、空行及净值无效的行直接跳过，不作为错误上报。
    """
    records: List[FundNavRecord] = []
    for line in text.splitlines():
        parts = _FIELD_SPLIT.split(line)
        if len(parts) < 6:
            continue
        scheme_code = parts[0].strip()
        scheme_name = parts[3].strip()
        if not scheme_code or not scheme_name:
            continue
        nav = _parse_nav(parts[4])
        if nav is None:
            continue
        records.append(FundNavRecord(
            scheme_code=scheme_code,
            scheme_name=scheme_name,
            nav=nav,
            as_of_date=_parse_date(parts[5]),
        ))
    return records


def find_nav(records: List[FundNavRecord], scheme_code: str) -> Decimal:
    """在已下载的净值列表中查找指定基金"""
    code = scheme_code.strip()
    for record in records:
        if record.scheme_code == code:
            return record.nav
    raise NotFoundError(f"净值文件中未找到基金代码 {code}", scheme_code)


class FundNavSource(_HttpSource):
    """批量净值数据源：一次网络请求获得全部基金"""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        url: Optional[str] = None,
        timeout: Optional[float] = None,
        limiter: Optional[RateLimiter] = None,
    ):
        super().__init__(client, timeout or settings.FUND_NAV_TIMEOUT, limiter)
        self.url = url or settings.FUND_NAV_URL

    async def fetch_all(self) -> List[FundNavRecord]:
        try:
            response = await self._get(self.url)
            text = response.text
        except httpx.TimeoutException as exc:
            raise UpstreamError("净值文件下载超时") from exc
        except httpx.HTTPStatusError as exc:
            raise UpstreamError(f"净值接口返回 {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            raise UpstreamError(f"净值文件下载失败: {exc}") from exc

        records = parse_nav_file(text)
        if not records:
            raise UpstreamError("净值文件中没有可解析的记录")
        logger.info(f"净值文件解析完成，共 {len(records)} 条")
        return records

    async def fetch_one(self, scheme_code: str) -> Decimal:
        records = await self.fetch_all()
        return find_nav(records, scheme_code)
