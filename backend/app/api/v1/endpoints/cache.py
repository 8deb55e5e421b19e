"""
Cache introspection and manual clearing.
"""
from fastapi import APIRouter, Depends
from typing import Optional

from app.api.dependencies import get_cache_registry
from app.core.logging_config import logger
from app.services.cache_service import CacheRegistry

router = APIRouter()


@router.get("/stats")
async def get_cache_stats(registry: CacheRegistry = Depends(get_cache_registry)):
    """Size and keys of every namespace, plus the background refresh queue"""
    return registry.stats()


@router.post("/clear")
async def clear_all_caches(registry: CacheRegistry = Depends(get_cache_registry)):
    removed = registry.clear_all()
    return {"success": True, "removed": removed}


@router.get("/{namespace}/stats")
async def get_namespace_stats(namespace: str, registry: CacheRegistry = Depends(get_cache_registry)):
    cache = registry.namespace(namespace)
    stats = cache.stats()
    return {"namespace": cache.name, "size": stats["size"], "keys": stats["keys"],
            "ttl_seconds": stats["ttl_seconds"], "hits": stats["hits"], "misses": stats["misses"]}


@router.post("/{namespace}/clear")
async def clear_namespace(
    namespace: str,
    key: Optional[str] = None,
    registry: CacheRegistry = Depends(get_cache_registry),
):
    """Drop one key, or the whole namespace when no key is given"""
    removed = registry.invalidate(namespace, key)
    logger.info(f"Cache {namespace} cleared{f' for key {key}' if key else ''} ({removed} entries)")
    return {"success": True, "namespace": namespace, "key": key, "removed": removed}
