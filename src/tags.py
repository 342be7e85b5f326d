"""
Tag reconciliation - converge an unordered tag set on an external resource.

Tags are compared as sets, so ordering and duplicates are never treated as
drift. When the sets differ the whole set is replaced in a single call with
the tags in sorted order.
"""

import logging
from typing import Any, Awaitable, Callable, Iterable, List

from progress import ProgressStatus

logger = logging.getLogger(__name__)

ReplaceAllTags = Callable[[List[str]], Awaitable[Any]]


def join_tags(tags: Iterable[str]) -> str:
    """Join tags into a comma separated list, as used by list filters."""
    return ",".join(tags)


async def reconcile_tags(
    desired: Iterable[str],
    observed: Iterable[str],
    replace_all: ReplaceAllTags,
) -> ProgressStatus:
    """
    Make the observed tag set equal to the desired one.

    Args:
        desired: Tags from the object's spec.
        observed: Tags from the last read of the external resource.
        replace_all: Replaces every tag on the resource with the given list.

    Returns:
        NeedsRefresh after a replace call, so the new tags get observed;
        Done when nothing needed changing.
    """
    desired_set = set(desired or [])
    observed_set = set(observed or [])
    if desired_set == observed_set:
        return ProgressStatus.done()

    tags = sorted(desired_set)
    logger.debug(f"Replacing tags {sorted(observed_set)} with {tags}")
    await replace_all(tags)
    return ProgressStatus.needs_refresh()


def tag_reconciler(client: Any, resource_type: str, resource_id: str) -> Callable[
    [Iterable[str], Iterable[str]], Awaitable[ProgressStatus]
]:
    """Bind :func:`reconcile_tags` to a client's replace-all-tags endpoint."""

    async def replace_all(tags: List[str]) -> None:
        await client.replace_all_tags(resource_type, resource_id, tags)

    async def reconcile(
        desired: Iterable[str], observed: Iterable[str]
    ) -> ProgressStatus:
        return await reconcile_tags(desired, observed, replace_all)

    return reconcile
