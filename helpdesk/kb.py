from __future__ import annotations

from typing import Optional

from sqlalchemy import desc, func, or_

from helpdesk.errors import NotFound, OperationResult, ValidationError
from helpdesk.guard import OperationContext, guarded_operation, optional_text, require_text
from helpdesk.models import Category, KbArticle, TeamMember, isoformat, now_utc
from helpdesk.policy import KbAction, Resource, ResourceType
from helpdesk.roles import Role, at_least


def serialize_article(article: KbArticle) -> dict:
    return {
        "id": article.id,
        "title": article.title,
        "content": article.content,
        "keywords": article.keywords,
        "published": bool(article.published),
        "published_at": isoformat(article.published_at),
        "created_at": isoformat(article.created_at),
        "updated_at": isoformat(article.updated_at),
        "author": {"id": article.author.id, "name": article.author.name} if article.author else None,
        "category": {"id": article.category.id, "name": article.category.name} if article.category else None,
    }


def _load_article(ctx: OperationContext, article_id: str, action: KbAction, for_update: bool = False) -> KbArticle:
    q = ctx.db.query(KbArticle).filter(KbArticle.id == article_id)
    if for_update:
        q = q.populate_existing().with_for_update()
    article = q.one_or_none()
    if article is None:
        raise NotFound("Article not found")
    ctx.authorize(action, Resource.for_article(article))
    return article


def _category_or_none(ctx: OperationContext, category_id: Optional[str]) -> Optional[str]:
    if category_id is not None and ctx.db.get(Category, category_id) is None:
        raise ValidationError("category_id", "Invalid category")
    return category_id


def _author_for(ctx: OperationContext) -> TeamMember:
    """Team member row for the signed-in author, created on first use."""
    principal = ctx.principal
    member = ctx.db.query(TeamMember).filter(TeamMember.email == principal.email).one_or_none()
    if member is None:
        member = TeamMember(
            email=principal.email,
            name=principal.name or principal.email,
            role="admin" if at_least(principal, Role.ADMIN) else "staff",
        )
        ctx.db.add(member)
        ctx.db.flush()
    return member


# --------------------------------------------------------------------------------------
# Public reads
# --------------------------------------------------------------------------------------


@guarded_operation("Failed to fetch articles")
def list_published_articles(ctx: OperationContext, category_id=None, search=None) -> OperationResult:
    category_id = optional_text(category_id)
    search = optional_text(search)
    ctx.precheck(KbAction.READ_PUBLISHED, ResourceType.KB_ARTICLE)

    q = ctx.db.query(KbArticle).filter(KbArticle.published.is_(True))
    if category_id:
        q = q.filter(KbArticle.category_id == category_id)
    if search:
        pattern = f"%{search.lower()}%"
        q = q.filter(
            or_(
                func.lower(KbArticle.title).like(pattern),
                func.lower(KbArticle.content).like(pattern),
                func.lower(KbArticle.keywords).like(pattern),
            )
        )
    articles = q.order_by(desc(KbArticle.updated_at)).all()
    return OperationResult.ok(articles=[serialize_article(a) for a in articles])


@guarded_operation("Failed to fetch article")
def get_published_article(ctx: OperationContext, article_id) -> OperationResult:
    article_id = require_text("article_id", article_id, "Article ID")
    ctx.precheck(KbAction.READ_PUBLISHED, ResourceType.KB_ARTICLE)
    article = (
        ctx.db.query(KbArticle)
        .filter(KbArticle.id == article_id, KbArticle.published.is_(True))
        .one_or_none()
    )
    if article is None:
        raise NotFound("Article not found")
    return OperationResult.ok(article=serialize_article(article))


@guarded_operation("Failed to fetch categories")
def list_kb_categories(ctx: OperationContext) -> OperationResult:
    ctx.precheck(KbAction.READ_PUBLISHED, ResourceType.KB_ARTICLE)
    published_count = func.count(KbArticle.id)
    rows = (
        ctx.db.query(Category.id, Category.name, published_count.label("article_count"))
        .join(KbArticle, KbArticle.category_id == Category.id)
        .filter(KbArticle.published.is_(True))
        .group_by(Category.id, Category.name)
        .order_by(Category.name)
        .all()
    )
    return OperationResult.ok(
        categories=[{"id": row.id, "name": row.name, "article_count": row.article_count} for row in rows]
    )


# --------------------------------------------------------------------------------------
# Staff management
# --------------------------------------------------------------------------------------


@guarded_operation("Failed to fetch articles")
def list_articles_for_staff(ctx: OperationContext) -> OperationResult:
    ctx.precheck(KbAction.READ_ANY, ResourceType.KB_ARTICLE)
    ctx.authorize(KbAction.READ_ANY, Resource(ResourceType.KB_ARTICLE))
    articles = ctx.db.query(KbArticle).order_by(desc(KbArticle.updated_at)).all()
    return OperationResult.ok(articles=[serialize_article(a) for a in articles])


@guarded_operation("Failed to fetch article")
def get_article_for_staff(ctx: OperationContext, article_id) -> OperationResult:
    article_id = require_text("article_id", article_id, "Article ID")
    ctx.precheck(KbAction.READ_ANY, ResourceType.KB_ARTICLE)
    article = _load_article(ctx, article_id, KbAction.READ_ANY)
    return OperationResult.ok(article=serialize_article(article))


@guarded_operation("Failed to create article")
def create_kb_article(
    ctx: OperationContext,
    title,
    content,
    keywords="",
    category_id=None,
    published=False,
) -> OperationResult:
    title = require_text("title", title)
    content = require_text("content", content)
    keywords = optional_text(keywords) or ""
    category_id = optional_text(category_id)
    published = bool(published)
    ctx.precheck(KbAction.CREATE, ResourceType.KB_ARTICLE)
    if published:
        ctx.precheck(KbAction.PUBLISH, ResourceType.KB_ARTICLE)

    ctx.authorize(KbAction.CREATE, Resource(ResourceType.KB_ARTICLE))
    _category_or_none(ctx, category_id)
    author = _author_for(ctx)
    now = now_utc()
    article = KbArticle(
        title=title,
        content=content,
        keywords=keywords,
        category_id=category_id,
        published=published,
        published_at=now if published else None,
        author_id=author.id,
        created_at=now,
        updated_at=now,
    )
    ctx.db.add(article)
    ctx.db.flush()
    article_id = article.id
    ctx.db.commit()
    ctx.audit("create", "kb_article", article_id, f"Created article: {title}")
    return OperationResult.ok(article_id=article_id)


@guarded_operation("Failed to update article")
def update_kb_article(
    ctx: OperationContext,
    article_id,
    title,
    content,
    keywords="",
    category_id=None,
    published=False,
) -> OperationResult:
    article_id = require_text("article_id", article_id, "Article ID")
    title = require_text("title", title)
    content = require_text("content", content)
    keywords = optional_text(keywords) or ""
    category_id = optional_text(category_id)
    published = bool(published)
    ctx.precheck(KbAction.UPDATE, ResourceType.KB_ARTICLE)

    article = _load_article(ctx, article_id, KbAction.UPDATE, for_update=True)
    if published != bool(article.published):
        ctx.authorize(KbAction.PUBLISH, Resource.for_article(article))
    _category_or_none(ctx, category_id)
    now = now_utc()
    if published and not article.published and article.published_at is None:
        article.published_at = now
    article.title = title
    article.content = content
    article.keywords = keywords
    article.category_id = category_id
    article.published = published
    article.updated_at = now
    ctx.db.commit()
    ctx.audit("update", "kb_article", article_id, f"Updated article: {title}")
    return OperationResult.ok(article_id=article_id)


@guarded_operation("Failed to delete article")
def delete_kb_article(ctx: OperationContext, article_id) -> OperationResult:
    article_id = require_text("article_id", article_id, "Article ID")
    ctx.precheck(KbAction.DELETE, ResourceType.KB_ARTICLE)
    article = _load_article(ctx, article_id, KbAction.DELETE, for_update=True)
    title = article.title
    ctx.db.delete(article)
    ctx.db.commit()
    ctx.audit("delete", "kb_article", article_id, f"Deleted article: {title}")
    return OperationResult.ok(article_id=article_id)


@guarded_operation("Failed to toggle article status")
def toggle_kb_article_published(ctx: OperationContext, article_id) -> OperationResult:
    article_id = require_text("article_id", article_id, "Article ID")
    ctx.precheck(KbAction.PUBLISH, ResourceType.KB_ARTICLE)
    article = _load_article(ctx, article_id, KbAction.PUBLISH, for_update=True)
    now = now_utc()
    article.published = not article.published
    if article.published and article.published_at is None:
        article.published_at = now
    article.updated_at = now
    published = bool(article.published)
    title = article.title
    ctx.db.commit()
    state = "Published" if published else "Unpublished"
    ctx.audit("update", "kb_article", article_id, f"{state} article: {title}")
    return OperationResult.ok(article_id=article_id, published=published)
