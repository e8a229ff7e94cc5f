"""
Comment Tree Manager
====================

Owns parent/child linkage of comments:

- depth = parent.depth + 1 (0 for top-level), never above MAX_COMMENT_DEPTH
- a reply's parent must exist on the same post
- only the creator may edit or delete a comment
- deleting cascades per BOARD_COMMENT_DELETE_CASCADE:
    'replies' (default) - the comment and its DIRECT replies; grandchildren
                          stay, pointing at a deleted parent
    'subtree'           - the comment and every descendant

The post a new comment is attached to is not checked for existence.
"""

import logging
from typing import Optional

from django.conf import settings
from django.db import transaction

from . import queries
from .broker import EventBroker, EventKind
from .exceptions import DepthLimitExceeded, Forbidden, NotFound
from .models import Comment, MAX_COMMENT_DEPTH, UNKNOWN_IDENTITY
from .serializers import CommentSerializer

logger = logging.getLogger(__name__)

CASCADE_REPLIES = 'replies'
CASCADE_SUBTREE = 'subtree'


def create_comment(
    post_id: int,
    text: str,
    identity: str,
    *,
    broker: EventBroker,
    parent_id: Optional[int] = None,
) -> Comment:
    depth = 0
    if parent_id is not None:
        parent = Comment.objects.filter(id=parent_id).first()
        if parent is None or parent.post_id != post_id:
            raise NotFound("Parent comment not found")

        depth = parent.depth + 1
        if depth > MAX_COMMENT_DEPTH:
            logger.warning(f"{identity} tried to reply below depth {MAX_COMMENT_DEPTH} on comment {parent_id}")
            raise DepthLimitExceeded(f"Maximum nesting depth ({MAX_COMMENT_DEPTH}) reached")

    comment = Comment.objects.create(
        post_id=post_id,
        parent_id=parent_id,
        text=text,
        created_by=identity or UNKNOWN_IDENTITY,
        depth=depth,
    )
    logger.info(f"{comment.created_by} commented {comment.id} on post {post_id} at depth {depth}")

    comment = queries.get_comment(comment.id)
    broker.publish(EventKind.COMMENT_CREATED, CommentSerializer(comment).data)
    return comment


def _get_owned_comment(comment_id: int, identity: str, action: str) -> Comment:
    comment = queries.get_comment(comment_id)
    if comment is None:
        raise NotFound("Comment not found")
    if comment.created_by != identity:
        logger.warning(f"{identity} tried to {action} comment {comment_id} owned by {comment.created_by}")
        raise Forbidden(f"You can only {action} your own comments")
    return comment


def update_comment(comment_id: int, text: str, identity: str, *, broker: EventBroker) -> Comment:
    _get_owned_comment(comment_id, identity, 'update')
    Comment.objects.filter(id=comment_id).update(text=text)
    logger.info(f"{identity} updated comment {comment_id}")

    comment = queries.get_comment(comment_id)
    broker.publish(EventKind.COMMENT_UPDATED, CommentSerializer(comment).data)
    return comment


def _cascade_ids(comment: Comment) -> list[int]:
    """Ids removed together with `comment`, itself included."""
    mode = getattr(settings, 'BOARD_COMMENT_DELETE_CASCADE', CASCADE_REPLIES)
    if mode not in (CASCADE_REPLIES, CASCADE_SUBTREE):
        raise ValueError(f"Invalid BOARD_COMMENT_DELETE_CASCADE: {mode}")

    ids = [comment.id]
    level = [comment.id]
    while level:
        level = list(Comment.objects.filter(parent_id__in=level).values_list('id', flat=True))
        ids.extend(level)
        if mode == CASCADE_REPLIES:
            break
    return ids


def delete_comment(comment_id: int, identity: str, *, broker: EventBroker) -> dict:
    """
    Delete one's own comment and its cascade set.

    Returns the comment as it was before deletion; that is also the
    CommentDeleted payload.
    """
    comment = _get_owned_comment(comment_id, identity, 'delete')
    prior_state = CommentSerializer(comment).data

    with transaction.atomic():
        doomed = _cascade_ids(comment)
        Comment.objects.filter(id__in=doomed).delete()
    logger.info(f"{identity} deleted comment {comment_id} and {len(doomed) - 1} repl(ies)")

    broker.publish(EventKind.COMMENT_DELETED, prior_state)
    return prior_state


def list_top_level(post_id: int) -> list[Comment]:
    return queries.list_top_level_comments(post_id)


def list_replies(parent_id: int) -> list[Comment]:
    return queries.list_replies(parent_id)


def count_all(post_id: int) -> int:
    return queries.count_comments(post_id)
