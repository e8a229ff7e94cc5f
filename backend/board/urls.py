"""
Board App URL Configuration
"""
from django.urls import path
from .streams import event_stream
from .views import (
    PostListView,
    MyPostsView,
    PostDetailView,
    PostCommentsView,
    CommentDetailView,
    CommentRepliesView,
    LikePostView,
    LikeCommentView,
    LikeToggleView,
)

urlpatterns = [
    # Posts
    path('posts/', PostListView.as_view(), name='post-list'),
    path('posts/mine/', MyPostsView.as_view(), name='my-posts'),
    path('posts/<int:post_id>/', PostDetailView.as_view(), name='post-detail'),
    path('posts/<int:post_id>/comments/', PostCommentsView.as_view(), name='post-comments'),
    path('posts/<int:post_id>/like/', LikePostView.as_view(), name='like-post'),

    # Comments
    path('comments/<int:comment_id>/', CommentDetailView.as_view(), name='comment-detail'),
    path('comments/<int:comment_id>/replies/', CommentRepliesView.as_view(), name='comment-replies'),
    path('comments/<int:comment_id>/like/', LikeCommentView.as_view(), name='like-comment'),

    # Likes (unified endpoint)
    path('likes/toggle/', LikeToggleView.as_view(), name='like-toggle'),

    # Live updates
    path('events/<slug:kind>/', event_stream, name='event-stream'),
]
