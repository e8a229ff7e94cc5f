"""
Entity Store: Read Access
=========================

Every read the rest of the app needs goes through here.

ORDERING:
---------
All listings are most-recent-first: ORDER BY created_at DESC, id DESC.
The id tie-break keeps order stable for rows created in the same instant.

THE N+1 PROBLEM:
----------------
Serializing a post renders its top-level comments, their replies, and so on,
each with its liked-by list. Fetching replies per comment would cost one
query per node. Instead:

1. Fetch ALL comments for the posts being rendered in ONE query
   (likes prefetched in one more)
2. Index them by post (roots) and by parent (children) in one O(n) pass
3. Serializers walk the index instead of querying

A listing of any number of posts therefore costs a fixed number of queries.
"""

from typing import Iterable, Optional

from django.db.models import Count, Prefetch, QuerySet

from .models import Post, Comment, Like


def _likes_prefetch() -> Prefetch:
    return Prefetch('likes', queryset=Like.objects.order_by('created_at', 'id'))


def posts_queryset() -> QuerySet:
    return (
        Post.objects
        .prefetch_related(_likes_prefetch())
        .annotate(comment_count=Count('comments'))
        .order_by('-created_at', '-id')
    )


def comments_queryset() -> QuerySet:
    return (
        Comment.objects
        .prefetch_related(_likes_prefetch())
        .order_by('-created_at', '-id')
    )


def get_post(post_id: int) -> Optional[Post]:
    """Fetch a single post with its likes, or None."""
    return posts_queryset().filter(id=post_id).first()


def get_comment(comment_id: int) -> Optional[Comment]:
    """Fetch a single comment with its likes, or None."""
    return comments_queryset().filter(id=comment_id).first()


def list_posts(created_by: Optional[str] = None) -> list[Post]:
    """All posts, or the posts of one identity."""
    queryset = posts_queryset()
    if created_by is not None:
        queryset = queryset.filter(created_by=created_by)
    return list(queryset)


def list_top_level_comments(post_id: int) -> list[Comment]:
    return list(comments_queryset().filter(post_id=post_id, parent__isnull=True))


def list_replies(parent_id: int) -> list[Comment]:
    """Direct replies to a comment."""
    return list(comments_queryset().filter(parent_id=parent_id))


def count_comments(post_id: int) -> int:
    """Comments on a post across all depths."""
    return Comment.objects.filter(post_id=post_id).count()


def get_comments_for_posts(post_ids: Iterable[int]) -> list[Comment]:
    """
    Fetch ALL comments of the given posts in a SINGLE query.

    This is the KEY to avoiding N+1.
    """
    return list(comments_queryset().filter(post_id__in=list(post_ids)))


def index_comments(flat_comments: list[Comment]) -> dict:
    """
    Index a flat, most-recent-first list of comments for tree rendering.

    Algorithm: O(n) single pass with hash maps. Appending in input order
    keeps every list most-recent-first.

    Example Input (flat):
        [Comment(id=3, post=1, parent=1), Comment(id=2, post=1, parent=None),
         Comment(id=1, post=1, parent=None)]

    Example Output:
        {
            'roots': {1: [Comment(id=2), Comment(id=1)]},
            'children': {1: [Comment(id=3)]},
        }

    A comment whose parent was deleted is kept under 'children' of the
    missing id and so is never reached from a root.
    """
    roots = {}
    children = {}
    for comment in flat_comments:
        if comment.parent_id is None:
            roots.setdefault(comment.post_id, []).append(comment)
        else:
            children.setdefault(comment.parent_id, []).append(comment)
    return {'roots': roots, 'children': children}


def get_posts_with_comment_index(created_by: Optional[str] = None) -> tuple[list[Post], dict]:
    """
    Main entry point for feed listings.

    TOTAL QUERIES: 4, whatever the number of posts and comments
    - posts (+ comment counts)
    - likes of those posts
    - all comments of those posts
    - likes of those comments
    """
    posts = list_posts(created_by=created_by)
    flat_comments = get_comments_for_posts(post.id for post in posts)
    return posts, index_comments(flat_comments)
