from fastapi import APIRouter, Header, HTTPException, Request

from lnstocks.errors import IndexNotReadyError
from lnstocks.schemas.search import SearchResponse
from lnstocks.services.quote_cache import unique_symbols

router = APIRouter()


def parse_symbols(raw: str | None, max_symbols: int) -> list[str]:
    return unique_symbols(str(raw or "").split(","))[:max_symbols]


def _require_symbols(request: Request, raw: str | None) -> list[str]:
    symbols = parse_symbols(raw, request.app.state.settings.MAX_SYMBOLS_PER_REQUEST)
    if not symbols:
        raise HTTPException(status_code=400, detail='symbols required')
    return symbols


@router.get('/health')
def health(request: Request):
    settings = request.app.state.settings
    stats = request.app.state.symbol_index.get_stats()
    return {
        'name': 'LN Stocks API',
        'version': request.app.version,
        'status': 'running',
        'upstream': 'finnhub' if settings.has_upstream_key else 'demo',
        'cache_ttl_sec': settings.QUOTE_TTL_SEC,
        'index': 'ready' if stats.is_initialized else 'initializing',
    }


@router.get('/quotes/{symbol}')
def get_quote(symbol: str, request: Request):
    return request.app.state.quote_cache.get(symbol).model_dump()


@router.get('/quotes')
def get_quotes(request: Request, symbols: str | None = None):
    req = _require_symbols(request, symbols)
    rows = request.app.state.quote_cache.get_many(req)
    return {s: row.model_dump() for s, row in rows.items()}


@router.get('/metrics')
def get_metrics(request: Request, symbols: str | None = None):
    req = _require_symbols(request, symbols)
    rows = request.app.state.metrics_enricher.get(req)
    return {s: row.model_dump() for s, row in rows.items()}


@router.get('/series')
def get_series(request: Request, symbols: str | None = None):
    req = _require_symbols(request, symbols)
    cache = request.app.state.quote_cache
    out = {}
    for s in req:
        points = cache.recent_points(s)
        out[s] = {
            'symbol': s,
            'points': [p.model_dump() for p in points],
            'source': 'quote_history' if points else 'error',
        }
    return out


@router.get('/search', response_model=SearchResponse)
def search(request: Request, q: str = '', limit: int | None = None):
    query = q.strip()
    results = request.app.state.symbol_index.search(query, limit=limit)
    return SearchResponse(query=query, results=results, count=len(results))


@router.get('/symbols/{symbol}')
def get_symbol(symbol: str, request: Request):
    try:
        doc = request.app.state.symbol_index.lookup(symbol)
    except IndexNotReadyError as exc:
        raise HTTPException(status_code=503, detail='INDEX_INITIALIZING') from exc
    if doc is None:
        raise HTTPException(status_code=404, detail='symbol not found')
    return doc.model_dump()


@router.get('/index/status')
def index_status(request: Request):
    stats = request.app.state.symbol_index.get_stats()
    return {
        'status': 'ready' if stats.is_initialized else 'initializing',
        'stats': stats.model_dump(),
    }


@router.post('/index/rebuild')
def rebuild_index(request: Request, x_operator_token: str | None = Header(default=None, alias='X-Operator-Token')):
    if not x_operator_token:
        raise HTTPException(status_code=400, detail='X-Operator-Token header required')
    index = request.app.state.symbol_index
    success = index.build()
    return {'success': success, 'stats': index.get_stats().model_dump()}


@router.get('/metrics/cache')
def cache_metrics(request: Request):
    metrics = request.app.state.quote_cache.metrics()
    stats = request.app.state.symbol_index.get_stats()
    metrics.update(
        {
            'index_state': stats.state,
            'index_document_count': stats.document_count,
            'index_build_count': stats.build_count,
            'index_skipped_builds': stats.skipped_builds,
        }
    )
    return metrics
