from authz import Authz
from schemas import User

USERS = {
    "stu": User(user_id="stu", permission_level=0),
    "ta": User(user_id="ta", permission_level=5, email_address="ta@example.edu"),
    "prof": User(user_id="prof", permission_level=10, email_address="prof@example.edu"),
}


def _authz(course_env, **permissions):
    ce = course_env.model_copy(update={"permission_levels": {**course_env.permission_levels, **permissions}})
    return Authz(ce, USERS.get)


def test_levels_follow_roles(course_env):
    authz = _authz(course_env)
    assert authz.has_permissions("prof", "dont_log_past_answers")
    assert not authz.has_permissions("ta", "dont_log_past_answers")
    assert authz.has_permissions("stu", "record_answers_when_open")


def test_unknown_user_permission_or_role(course_env):
    authz = _authz(course_env, score_sets="wizard")
    assert not authz.has_permissions("ghost", "record_answers_when_open")
    assert not authz.has_permissions("prof", "no_such_permission")
    assert not authz.has_permissions("prof", "score_sets")
    assert authz.required_level("score_sets") is None


def test_users_with_permission(course_env):
    authz = _authz(course_env, score_sets="ta")
    assert [u.user_id for u in authz.users_with_permission("score_sets", USERS.values())] == ["ta", "prof"]
    assert authz.users_with_permission("missing", USERS.values()) == []
