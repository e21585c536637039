"""Feature flag decorators and ASGI middleware."""

from __future__ import annotations

import functools
import logging
from typing import Any, Callable, Dict, Optional, TypeVar

from flagkit.core.feature_flags.client import FeatureFlagClient, get_feature_client
from flagkit.core.feature_flags.models import EvaluationContext

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


def _extract_context(
    context_extractor: Optional[Callable[..., EvaluationContext]],
    args: tuple,
    kwargs: dict,
) -> Optional[EvaluationContext]:
    if context_extractor is None:
        return None
    try:
        return context_extractor(*args, **kwargs)
    except Exception as e:
        logger.warning(f"Failed to extract flag context: {e}")
        return None


def feature_flag(
    flag_key: str,
    fallback: Optional[Callable[..., Any]] = None,
    context_extractor: Optional[Callable[..., EvaluationContext]] = None,
    client: Optional[FeatureFlagClient] = None,
) -> Callable[[F], F]:
    """Decorator to gate function execution behind a feature flag.

    Args:
        flag_key: Key of the feature flag
        fallback: Function to call instead when the flag is disabled
        context_extractor: Builds the EvaluationContext from the call arguments
        client: Client to evaluate with (defaults to the process client)

    Example:
        @feature_flag("new-search", fallback=legacy_search,
                      context_extractor=lambda req: EvaluationContext(subject_id=req.user_id))
        def search(request):
            return search_v2(request)
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            context = _extract_context(context_extractor, args, kwargs)
            flag_client = client or get_feature_client()
            if flag_client.is_enabled(flag_key, context):
                return func(*args, **kwargs)
            elif fallback:
                return fallback(*args, **kwargs)
            logger.debug(f"Feature flag '{flag_key}' is disabled, skipping {func.__name__}")
            return None

        return wrapper  # type: ignore

    return decorator


def feature_variant(
    flag_key: str,
    variants: Dict[str, Callable[..., Any]],
    default_variant: str = "control",
    context_extractor: Optional[Callable[..., EvaluationContext]] = None,
    client: Optional[FeatureFlagClient] = None,
) -> Callable[[F], F]:
    """Decorator for A/B testing with multiple variants.

    The assigned variant's implementation is called; when the subject gets no
    variant (or one without an implementation) ``default_variant`` is used,
    and the decorated function itself if that is missing too.

    Example:
        @feature_variant(
            "checkout-experiment",
            variants={"control": checkout_v1, "wizard": checkout_wizard},
            context_extractor=lambda cart: EvaluationContext(subject_id=cart.owner_id),
        )
        def checkout(cart):
            pass
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            context = _extract_context(context_extractor, args, kwargs)
            flag_client = client or get_feature_client()
            result = flag_client.evaluate(flag_key, context)

            variant_name = result.variant if result.enabled and result.variant else default_variant
            implementation = variants.get(variant_name, variants.get(default_variant))
            if implementation is not None:
                logger.debug(f"A/B test '{flag_key}': using variant '{variant_name}'")
                return implementation(*args, **kwargs)
            return func(*args, **kwargs)

        return wrapper  # type: ignore

    return decorator


class FeatureFlagMiddleware:
    """ASGI middleware that builds an EvaluationContext per request.

    The context is stored at ``scope["state"]["flag_context"]``.
    """

    def __init__(
        self,
        app: Any,
        subject_header: bytes = b"x-subject-id",
        attribute_headers: Optional[Dict[bytes, str]] = None,
    ):
        self.app = app
        self.subject_header = subject_header
        self.attribute_headers = attribute_headers or {b"x-tenant-id": "tenantId"}

    async def __call__(self, scope: dict, receive: Any, send: Any) -> None:
        if scope["type"] == "http":
            headers = dict(scope.get("headers", []))
            subject_id = headers.get(self.subject_header, b"").decode("latin-1")
            attributes = {
                name: headers[header].decode("latin-1")
                for header, name in self.attribute_headers.items()
                if header in headers
            }

            scope["state"] = scope.get("state", {})
            scope["state"]["flag_context"] = EvaluationContext(
                subject_id=subject_id or None,
                attributes=attributes,
            )

        await self.app(scope, receive, send)
