"""
Django Admin Configuration for Board Models

Likes are read-only here: like_count is maintained by the like engine
(board.services) and must move together with the Like rows.
"""
from django.contrib import admin
from .models import Post, Comment, Like


@admin.register(Post)
class PostAdmin(admin.ModelAdmin):
    list_display = ['id', 'title', 'created_by', 'like_count', 'created_at']
    search_fields = ['title', 'text', 'created_by']
    readonly_fields = ['like_count', 'created_at']
    date_hierarchy = 'created_at'


@admin.register(Comment)
class CommentAdmin(admin.ModelAdmin):
    list_display = ['id', 'post_id', 'parent_id', 'created_by', 'depth', 'like_count', 'created_at']
    list_filter = ['depth']
    search_fields = ['text', 'created_by']
    readonly_fields = ['like_count', 'depth', 'created_at']
    # parents may be gone after a shallow delete
    exclude = ['post', 'parent']

    def has_add_permission(self, request):
        # depth comes from the parent, see board.comments
        return False


@admin.register(Like)
class LikeAdmin(admin.ModelAdmin):
    list_display = ['identity', 'content_type', 'object_id', 'created_at']
    list_filter = ['content_type']
    search_fields = ['identity']

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False
