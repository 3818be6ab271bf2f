"""Entity Store transition function.

``reduce(state, request)`` is total and pure: it never raises, never does
I/O and never reads the clock. Unknown request types return the input state
unchanged. Side effects that belong to a transition, such as the owner
notification on a save or fork, are folded into the same new snapshot.

The same transitions serve the optimistic local path and the realtime echo
path, so every one of them is idempotent with respect to its own entity key.
"""

from __future__ import annotations

from typing import Any, Callable

from prompt_share.core import requests as rq
from prompt_share.core.state import (
    VIEWER_FLAGS,
    AppState,
    Follow,
    Heart,
    Notification,
    Prompt,
    Save,
    SearchFilters,
    User,
)

Handler = Callable[[AppState, Any], AppState]

_FACET_FIELDS = ("types", "models", "tags", "categories")


def reduce(state: AppState, request: rq.Request) -> AppState:
    """Apply one request and return the resulting snapshot."""
    handler = _HANDLERS.get(type(request))
    if handler is None:
        return state
    return handler(state, request)


# --- Helpers ---


def _map_prompt(
    prompts: tuple[Prompt, ...], prompt_id: str, fn: Callable[[Prompt], Prompt]
) -> tuple[Prompt, ...]:
    return tuple(fn(p) if p.id == prompt_id else p for p in prompts)


def _viewer_sets(state: AppState) -> tuple[set[str], set[str], set[str]]:
    user_id = state.user.id if state.user else None
    if user_id is None:
        return set(), set(), set()
    hearted = {h.prompt_id for h in state.hearts if h.user_id == user_id}
    saved = {s.prompt_id for s in state.saves if s.user_id == user_id}
    forked = {p.parent_id for p in state.prompts if p.user_id == user_id and p.parent_id}
    return hearted, saved, forked


def _with_flags(prompt: Prompt, hearted: bool, saved: bool, forked: bool) -> Prompt:
    if (prompt.is_hearted, prompt.is_saved, prompt.is_forked) == (hearted, saved, forked):
        return prompt
    return prompt.model_copy(
        update={"is_hearted": hearted, "is_saved": saved, "is_forked": forked}
    )


def _refresh_viewer_flags(state: AppState) -> AppState:
    hearted, saved, forked = _viewer_sets(state)
    prompts = tuple(
        _with_flags(p, p.id in hearted, p.id in saved, p.id in forked) for p in state.prompts
    )
    return state.model_copy(update={"prompts": prompts})


def _owner_notification(
    kind: str, title: str, verb: str, prompt: Prompt, actor: User, at: str
) -> Notification:
    return Notification(
        id=f"notification-{kind}-{prompt.id}-{actor.id}-{at}",
        user_id=prompt.user_id,
        type=kind,
        title=title,
        message=f'{actor.name} {verb} your prompt "{prompt.title}"',
        data={
            "prompt_id": prompt.id,
            "prompt_title": prompt.title,
            "action_user_id": actor.id,
            "action_user_name": actor.name,
            "action_user_username": actor.username,
        },
        created_at=at,
    )


# --- User ---


def _set_user(state: AppState, req: rq.SetUser) -> AppState:
    return _refresh_viewer_flags(state.model_copy(update={"user": req.user}))


def _update_user(state: AppState, req: rq.UpdateUser) -> AppState:
    if state.user is None:
        return state
    updates = {k: v for k, v in req.updates.items() if k in User.model_fields and k != "id"}
    return state.model_copy(update={"user": state.user.model_copy(update=updates)})


# --- Prompts ---


def _set_prompts(state: AppState, req: rq.SetPrompts) -> AppState:
    return _refresh_viewer_flags(state.model_copy(update={"prompts": tuple(req.prompts)}))


def _add_prompt(state: AppState, req: rq.AddPrompt) -> AppState:
    incoming = req.prompt
    existing = state.find_prompt(incoming.id)
    if existing is not None:
        replaced = _with_flags(incoming, existing.is_hearted, existing.is_saved, existing.is_forked)
        return state.model_copy(
            update={"prompts": _map_prompt(state.prompts, incoming.id, lambda _: replaced)}
        )
    return _refresh_viewer_flags(state.model_copy(update={"prompts": (incoming, *state.prompts)}))


def _update_prompt(state: AppState, req: rq.UpdatePrompt) -> AppState:
    if state.find_prompt(req.id) is None:
        return state
    updates = {
        k: v
        for k, v in req.updates.items()
        if k in Prompt.model_fields and k not in VIEWER_FLAGS and k != "id"
    }
    if not updates:
        return state
    prompts = _map_prompt(state.prompts, req.id, lambda p: p.model_copy(update=updates))
    return state.model_copy(update={"prompts": prompts})


def _delete_prompt(state: AppState, req: rq.DeletePrompt) -> AppState:
    if state.find_prompt(req.id) is None:
        return state
    return _refresh_viewer_flags(
        state.model_copy(update={"prompts": tuple(p for p in state.prompts if p.id != req.id)})
    )


# --- Hearts and saves ---


def _set_hearts(state: AppState, req: rq.SetHearts) -> AppState:
    return _refresh_viewer_flags(state.model_copy(update={"hearts": tuple(req.hearts)}))


def _set_saves(state: AppState, req: rq.SetSaves) -> AppState:
    return _refresh_viewer_flags(state.model_copy(update={"saves": tuple(req.saves)}))


def _heart_prompt(state: AppState, req: rq.HeartPrompt) -> AppState:
    user = state.user
    if user is None or state.has_heart(user.id, req.prompt_id):
        return state
    heart = Heart(user_id=user.id, prompt_id=req.prompt_id, created_at=req.at)
    prompts = _map_prompt(
        state.prompts,
        req.prompt_id,
        lambda p: p.model_copy(update={"heart_count": p.heart_count + 1, "is_hearted": True}),
    )
    return state.model_copy(update={"hearts": (*state.hearts, heart), "prompts": prompts})


def _unheart_prompt(state: AppState, req: rq.UnheartPrompt) -> AppState:
    user = state.user
    if user is None or not state.has_heart(user.id, req.prompt_id):
        return state
    hearts = tuple(
        h for h in state.hearts if not (h.user_id == user.id and h.prompt_id == req.prompt_id)
    )
    prompts = _map_prompt(
        state.prompts,
        req.prompt_id,
        lambda p: p.model_copy(
            update={"heart_count": max(0, p.heart_count - 1), "is_hearted": False}
        ),
    )
    return state.model_copy(update={"hearts": hearts, "prompts": prompts})


def _save_prompt(state: AppState, req: rq.SavePrompt) -> AppState:
    user = state.user
    if user is None or state.has_save(user.id, req.prompt_id):
        return state
    save = Save(
        user_id=user.id,
        prompt_id=req.prompt_id,
        collection_id=req.collection_id,
        created_at=req.at,
    )
    prompts = _map_prompt(
        state.prompts,
        req.prompt_id,
        lambda p: p.model_copy(update={"save_count": p.save_count + 1, "is_saved": True}),
    )
    notifications = state.notifications
    saved = state.find_prompt(req.prompt_id)
    if saved is not None and saved.user_id != user.id:
        notification = _owner_notification(
            "prompt_saved", "Prompt Saved", "saved", saved, user, req.at
        )
        notifications = (*notifications, notification)
    return state.model_copy(
        update={"saves": (*state.saves, save), "prompts": prompts, "notifications": notifications}
    )


def _unsave_prompt(state: AppState, req: rq.UnsavePrompt) -> AppState:
    user = state.user
    if user is None or not state.has_save(user.id, req.prompt_id):
        return state
    saves = tuple(
        s for s in state.saves if not (s.user_id == user.id and s.prompt_id == req.prompt_id)
    )
    prompts = _map_prompt(
        state.prompts,
        req.prompt_id,
        lambda p: p.model_copy(update={"save_count": max(0, p.save_count - 1), "is_saved": False}),
    )
    return state.model_copy(update={"saves": saves, "prompts": prompts})


def _restore_save(state: AppState, req: rq.RestoreSave) -> AppState:
    user = state.user
    save = req.save
    if user is None or save.user_id != user.id or state.has_save(user.id, save.prompt_id):
        return state
    prompts = _map_prompt(
        state.prompts,
        save.prompt_id,
        lambda p: p.model_copy(update={"save_count": p.save_count + 1, "is_saved": True}),
    )
    return state.model_copy(update={"saves": (*state.saves, save), "prompts": prompts})


def _fork_prompt(state: AppState, req: rq.ForkPrompt) -> AppState:
    original = state.find_prompt(req.original_id)
    user = state.user
    prompts = _map_prompt(
        state.prompts,
        req.original_id,
        lambda p: p.model_copy(update={"fork_count": p.fork_count + 1}),
    )
    prompts = tuple(p for p in prompts if p.id != req.new_prompt.id)
    next_state = state.model_copy(update={"prompts": (req.new_prompt, *prompts)})

    if original is not None and user is not None and original.user_id != user.id:
        notification = _owner_notification(
            "prompt_forked", "Prompt Forked", "forked", original, user, req.at
        )
        next_state = next_state.model_copy(
            update={"notifications": (*state.notifications, notification)}
        )
    return _refresh_viewer_flags(next_state)


# --- Comments ---


def _add_comment(state: AppState, req: rq.AddComment) -> AppState:
    comment = req.comment
    if any(c.id == comment.id for c in state.comments):
        comments = tuple(comment if c.id == comment.id else c for c in state.comments)
        return state.model_copy(update={"comments": comments})
    prompts = _map_prompt(
        state.prompts,
        comment.prompt_id,
        lambda p: p.model_copy(update={"comment_count": p.comment_count + 1}),
    )
    return state.model_copy(update={"comments": (*state.comments, comment), "prompts": prompts})


def _update_comment(state: AppState, req: rq.UpdateComment) -> AppState:
    if not any(c.id == req.id for c in state.comments):
        return state
    comments = tuple(
        c.model_copy(update={"content": req.content, "is_edited": True, "updated_at": req.at})
        if c.id == req.id
        else c
        for c in state.comments
    )
    return state.model_copy(update={"comments": comments})


def _delete_comment(state: AppState, req: rq.DeleteComment) -> AppState:
    removed = next((c for c in state.comments if c.id == req.id), None)
    if removed is None:
        return state
    prompts = _map_prompt(
        state.prompts,
        removed.prompt_id,
        lambda p: p.model_copy(update={"comment_count": max(0, p.comment_count - 1)}),
    )
    comments = tuple(c for c in state.comments if c.id != req.id)
    return state.model_copy(update={"comments": comments, "prompts": prompts})


# --- Follows ---


def _follow_user(state: AppState, req: rq.FollowUser) -> AppState:
    user = state.user
    if user is None or user.id == req.following_id:
        return state
    if any(f.follower_id == user.id and f.following_id == req.following_id for f in state.follows):
        return state
    follow = Follow(follower_id=user.id, following_id=req.following_id, created_at=req.at)
    return state.model_copy(update={"follows": (*state.follows, follow)})


def _unfollow_user(state: AppState, req: rq.UnfollowUser) -> AppState:
    user = state.user
    if user is None:
        return state
    follows = tuple(
        f
        for f in state.follows
        if not (f.follower_id == user.id and f.following_id == req.following_id)
    )
    if len(follows) == len(state.follows):
        return state
    return state.model_copy(update={"follows": follows})


# --- Collections ---


def _add_collection(state: AppState, req: rq.AddCollection) -> AppState:
    others = tuple(c for c in state.collections if c.id != req.collection.id)
    return state.model_copy(update={"collections": (*others, req.collection)})


def _update_collection(state: AppState, req: rq.UpdateCollection) -> AppState:
    updates = {k: v for k, v in req.updates.items() if k != "id"}
    collections = tuple(
        c.model_copy(update=updates) if c.id == req.id else c for c in state.collections
    )
    return state.model_copy(update={"collections": collections})


def _delete_collection(state: AppState, req: rq.DeleteCollection) -> AppState:
    collections = tuple(c for c in state.collections if c.id != req.id)
    return state.model_copy(update={"collections": collections})


# --- Notifications ---


def _add_notification(state: AppState, req: rq.AddNotification) -> AppState:
    if any(n.id == req.notification.id for n in state.notifications):
        return state
    return state.model_copy(update={"notifications": (*state.notifications, req.notification)})


def _mark_notification_read(state: AppState, req: rq.MarkNotificationRead) -> AppState:
    notifications = tuple(
        n.model_copy(update={"read": True}) if n.id == req.id else n for n in state.notifications
    )
    return state.model_copy(update={"notifications": notifications})


def _clear_notifications(state: AppState, req: rq.ClearNotifications) -> AppState:
    return state.model_copy(update={"notifications": ()})


# --- Drafts ---


def _save_draft(state: AppState, req: rq.SaveDraft) -> AppState:
    draft = req.draft
    if any(d.id == draft.id for d in state.drafts):
        drafts = tuple(draft if d.id == draft.id else d for d in state.drafts)
    else:
        drafts = (*state.drafts, draft)
    return state.model_copy(update={"drafts": drafts})


def _delete_draft(state: AppState, req: rq.DeleteDraft) -> AppState:
    return state.model_copy(update={"drafts": tuple(d for d in state.drafts if d.id != req.id)})


# --- UI state ---


def _set_search_filters(state: AppState, req: rq.SetSearchFilters) -> AppState:
    patch = {k: v for k, v in dict(req.patch).items() if k in SearchFilters.model_fields}
    if "query" in patch and not isinstance(patch["query"], str):
        patch["query"] = ""
    for key in _FACET_FIELDS:
        if key in patch:
            value = patch[key]
            patch[key] = tuple(value) if isinstance(value, (list, tuple, set, frozenset)) else ()
    merged = state.search_filters.model_copy(update=patch)
    if not isinstance(merged.query, str):
        merged = merged.model_copy(update={"query": ""})
    return state.model_copy(update={"search_filters": merged})


def _set_theme(state: AppState, req: rq.SetTheme) -> AppState:
    if state.theme == req.theme:
        return state
    return state.model_copy(update={"theme": req.theme})


def _set_loading(state: AppState, req: rq.SetLoading) -> AppState:
    return state.model_copy(update={"loading": req.loading})


def _set_error(state: AppState, req: rq.SetError) -> AppState:
    return state.model_copy(update={"error": req.error})


_HANDLERS: dict[type[rq.Request], Handler] = {
    rq.SetUser: _set_user,
    rq.UpdateUser: _update_user,
    rq.SetPrompts: _set_prompts,
    rq.AddPrompt: _add_prompt,
    rq.UpdatePrompt: _update_prompt,
    rq.DeletePrompt: _delete_prompt,
    rq.SetHearts: _set_hearts,
    rq.SetSaves: _set_saves,
    rq.HeartPrompt: _heart_prompt,
    rq.UnheartPrompt: _unheart_prompt,
    rq.SavePrompt: _save_prompt,
    rq.UnsavePrompt: _unsave_prompt,
    rq.RestoreSave: _restore_save,
    rq.ForkPrompt: _fork_prompt,
    rq.AddComment: _add_comment,
    rq.UpdateComment: _update_comment,
    rq.DeleteComment: _delete_comment,
    rq.FollowUser: _follow_user,
    rq.UnfollowUser: _unfollow_user,
    rq.AddCollection: _add_collection,
    rq.UpdateCollection: _update_collection,
    rq.DeleteCollection: _delete_collection,
    rq.AddNotification: _add_notification,
    rq.MarkNotificationRead: _mark_notification_read,
    rq.ClearNotifications: _clear_notifications,
    rq.SaveDraft: _save_draft,
    rq.DeleteDraft: _delete_draft,
    rq.SetSearchFilters: _set_search_filters,
    rq.SetTheme: _set_theme,
    rq.SetLoading: _set_loading,
    rq.SetError: _set_error,
}
