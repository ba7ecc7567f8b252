from backend_api.service import student_profiles_from_user

ACTIVE_STUDENT_KEY = "active_student_id"


def student_profiles(request):
    return student_profiles_from_user(request.api_session.user)


def active_student_profile(request):
    """The student whose fees and results the current user is looking at.

    Students always get their own profile. Parents get the child selected in
    the session, falling back to their first linked child.
    """
    profiles = student_profiles(request)
    if not profiles:
        request.session.pop(ACTIVE_STUDENT_KEY, None)
        return None
    sid = request.session.get(ACTIVE_STUDENT_KEY)
    for profile in profiles:
        if profile["id"] == sid:
            return profile
    request.session[ACTIVE_STUDENT_KEY] = profiles[0]["id"]
    return profiles[0]
