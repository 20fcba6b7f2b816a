"""
Neighborhood News: Publisher
Records a Publication for content that reached "published" and hands it to the
publisher hook. The default hook writes a markdown file per article under
PUBLISH_DIR for the website/newsletter builders to pick up.
"""

from __future__ import annotations
import os
from pathlib import Path
from typing import Callable, Optional

from pipeline.src.kb import store
from pipeline.src.models import GeneratedContent, Publication

PUBLISH_DIR = Path(
    os.environ.get(
        "PUBLISH_DIR",
        str(Path(__file__).parent.parent.parent.parent / "published"),
    )
)

PublisherHook = Callable[[GeneratedContent, Publication], None]


def _yaml_front_matter(content: GeneratedContent, publication: Publication) -> str:
    # Escape any quotes in title/summary
    safe_title = content.title.replace('"', "'")
    safe_summary = (content.summary or "").replace('"', "'")[:300]
    return (
        f"---\n"
        f'title: "{safe_title}"\n'
        f'date: "{publication.published_at.isoformat()}"\n'
        f'neighborhood: "{content.neighborhood_id}"\n'
        f'category: "{content.category}"\n'
        f'summary: "{safe_summary}"\n'
        f"auto_published: {str(publication.auto_published).lower()}\n"
        f"---\n\n"
    )


def write_markdown(content: GeneratedContent, publication: Publication) -> None:
    """Default hook: published/<neighborhood>/<YYYY-MM-DD>-<content id>.md"""
    target_dir = PUBLISH_DIR / content.neighborhood_id
    target_dir.mkdir(parents=True, exist_ok=True)
    date = publication.published_at.strftime("%Y-%m-%d")
    path = target_dir / f"{date}-{content.id}.md"
    path.write_text(
        _yaml_front_matter(content, publication) + f"# {content.title}\n\n{content.body}\n",
        encoding="utf-8",
    )


def record_publication(
    content: GeneratedContent,
    auto_published: bool,
    hook: Optional[PublisherHook] = None,
) -> tuple[Publication, Optional[str]]:
    """
    Append the Publication row, then run the hook.
    Returns (publication, hook_error). A hook failure is reported, never raised.
    """
    publication = Publication(
        content_id=content.id,
        neighborhood_id=content.neighborhood_id,
        category=content.category,
        auto_published=auto_published,
    )
    if content.published_at:
        publication.published_at = content.published_at
    store.store_publication(publication)

    hook = hook or write_markdown
    try:
        hook(content, publication)
    except Exception as e:
        return publication, f"publisher hook failed for {content.id}: {type(e).__name__}: {e}"
    return publication, None
