"""
Data Models for Threadboard
===========================

Design Philosophy:
------------------
1. Comments use Adjacency List pattern (parent_id) with a stored depth
   - depth = parent.depth + 1, capped at MAX_COMMENT_DEPTH
   - post and parent references carry NO database constraint: deleting a
     comment removes only its direct replies, so grandchildren may keep a
     parent_id that points at a deleted row. Deleting a post leaves its
     comments in place unless BOARD_POST_DELETE_CASCADE is on.

2. Likes use a polymorphic approach via ContentType
   - One row per (identity, target) - the unique constraint IS the
     "at most one like per identity" guard
   - The liked-by set of a post/comment is the identities of its Like rows

3. like_count is a denormalized counter on Post/Comment
   - Only ever changed with F() expressions in the same transaction as the
     Like insert/delete, so like_count == number of Like rows

Identity:
---------
There are no user accounts. created_by / Like.identity hold the opaque
identity token from board.identity (usually a network address).

Indexes Strategy:
-----------------
- post.created_at: feed ordering, most recent first
- post.created_by: "my posts"
- comment.post_id + comment.parent_id: top-level comments of a post
- comment.parent_id + comment.created_at: replies to a comment
- like.identity + like.content_type + like.object_id: uniqueness + lookup
"""

from django.db import models
from django.contrib.contenttypes.fields import GenericForeignKey, GenericRelation
from django.contrib.contenttypes.models import ContentType
from django.utils import timezone


UNKNOWN_IDENTITY = 'unknown'

# Top-level comments have depth 0
MAX_COMMENT_DEPTH = 5


class Post(models.Model):
    """A board post. Root-level content that can have comments."""
    title = models.CharField(max_length=300, blank=True, default='')
    text = models.TextField(blank=True, default='')
    # base64 data or a URL
    image = models.TextField(blank=True, default='')
    created_by = models.CharField(
        max_length=255,
        default=UNKNOWN_IDENTITY,
        db_index=True  # For "my posts"
    )
    created_at = models.DateTimeField(
        default=timezone.now,
        editable=False,
        db_index=True
    )

    like_count = models.PositiveIntegerField(default=0)
    likes = GenericRelation('Like')

    class Meta:
        ordering = ['-created_at', '-id']

    def __str__(self):
        return f"{(self.title or '(untitled)')[:50]} by {self.created_by}"


class Comment(models.Model):
    """
    Threaded comment using Adjacency List pattern.

    depth is stored rather than computed so the depth limit can be checked
    from the parent row alone.
    """
    post = models.ForeignKey(
        Post,
        on_delete=models.DO_NOTHING,
        db_constraint=False,
        related_name='comments',
    )
    parent = models.ForeignKey(
        'self',
        on_delete=models.DO_NOTHING,
        db_constraint=False,
        null=True,
        blank=True,
        related_name='replies',
    )
    text = models.TextField()
    created_by = models.CharField(max_length=255, default=UNKNOWN_IDENTITY)
    created_at = models.DateTimeField(
        default=timezone.now,
        editable=False,
        db_index=True
    )

    like_count = models.PositiveIntegerField(default=0)
    likes = GenericRelation('Like')

    depth = models.PositiveSmallIntegerField(default=0)

    class Meta:
        ordering = ['-created_at', '-id']
        indexes = [
            models.Index(fields=['post', 'parent']),
            models.Index(fields=['parent', 'created_at']),
        ]

    def __str__(self):
        return f"Comment by {self.created_by} on {self.post_id}"


class Like(models.Model):
    """
    Polymorphic Like using Django's ContentType framework.

    CONCURRENCY STRATEGY:
    - Unique constraint (identity, content_type, object_id) enforced at DB level
    - Insert and counter update share one transaction
    - IntegrityError on insert means the identity already liked the target
    """
    identity = models.CharField(max_length=255)

    # Generic foreign key to Post or Comment
    content_type = models.ForeignKey(
        ContentType,
        on_delete=models.CASCADE
    )
    object_id = models.PositiveBigIntegerField()
    content_object = GenericForeignKey('content_type', 'object_id')

    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        ordering = ['created_at', 'id']
        constraints = [
            models.UniqueConstraint(
                fields=['identity', 'content_type', 'object_id'],
                name='unique_like_per_identity_per_object'
            )
        ]
        indexes = [
            models.Index(fields=['content_type', 'object_id']),
        ]

    def __str__(self):
        return f"{self.identity} liked {self.content_type.model} {self.object_id}"
