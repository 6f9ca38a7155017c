"""Recording graded answer submissions and notifying everything downstream.

``process_and_log_answer`` is called once per submitted problem page. It stores
sticky answers, merges the new score into the student's problem record, writes
the past-answer audit trail, and then notifies the analytics sensor and the
LMS. Each notification channel is isolated: a failure there is logged and
reported in the outcome but never undoes a record that was already written.
"""

from __future__ import annotations

import logging
import re
import time
from typing import Any, Callable, List, Mapping, Optional

import db
from answers import FormValue, create_ans_str_from_responses
from authz import Authz
from caliper import CaliperSensor, submission_events
from course_env import CourseEnvironment
from course_log import write_course_log
from jitar import format_jitar_id, jitar_problem_adjusted_status, jitar_problem_finished, jitar_top_level_id
from lti_grades import LTIGradeSubmitter
from mailer import MailError, build_message, send_email
from schemas import (
    GradedState,
    MergedProblem,
    MergedSet,
    PastAnswer,
    ProblemFlag,
    SubmissionOptions,
    SubmissionOutcome,
    SubmissionStatus,
    UserProblem,
    sync_attempt,
)
from scoring import compute_reduced_score, tracks_full_status

logger = logging.getLogger(__name__)

MSG_RECORDED = "Your score was recorded."
MSG_STORAGE_FAILURE = (
    "Your score was not recorded because there was a failure in storing the problem record to the database."
)
MSG_NOT_ASSIGNED = "Your score was not recorded because this problem has not been assigned to you."
MSG_SET_CLOSED = "Your score was not recorded because this homework set is closed."
MSG_NOT_RECORDED = "Your score was not recorded."
MSG_PAST_ANSWER_FAILED = "Your answer could not be saved to your answer history."
MSG_LMS_SENT = "Your score was successfully sent to the LMS."
MSG_LMS_NOT_SENT = "Your score was not successfully sent to the LMS."


def process_and_log_answer(
    ce: CourseEnvironment,
    authz: Authz,
    *,
    problem: MergedProblem,
    problem_set: MergedSet,
    pg: GradedState,
    form_fields: Mapping[str, FormValue],
    submit_time: float,
    options: SubmissionOptions,
    effective_user: str,
    sensor: Optional[CaliperSensor] = None,
    grader: Optional[LTIGradeSubmitter] = None,
    mail_sender: Callable[[CourseEnvironment, Any], None] = send_email,
) -> SubmissionOutcome:
    """Record a graded submission and return the message shown to the student.

    ``problem`` is the merged view the page was rendered from; it is updated in
    place so that it matches the stored record afterwards.
    """

    if not options.submit_answers:
        return SubmissionOutcome(status=SubmissionStatus.NOT_SUBMITTED)

    pure_problem = db.get_user_problem(ce.course_id, problem.user_id, problem.set_id, problem.problem_id)
    if pure_problem is None:
        return SubmissionOutcome(status=SubmissionStatus.NOT_ASSIGNED, notices=[MSG_NOT_ASSIGNED])

    past_answers_string, encoded_last_answer_string, scores, is_essay = create_ans_str_from_responses(
        form_fields, pg
    )
    log_answers = not authz.has_permissions(effective_user, "dont_log_past_answers")

    # Sticky answers are kept for every submission, recorded or not.
    problem.last_answer = encoded_last_answer_string
    pure_problem.last_answer = encoded_last_answer_string

    if not options.record_answers:
        if not db.put_user_problem(ce.course_id, pure_problem):
            logger.warning(
                "Could not store last answer for %s/%s/%s", problem.user_id, problem.set_id, problem.problem_id
            )
        notices = _log_past_answer(ce, problem, submit_time, scores, past_answers_string, log_answers)
        if submit_time < problem_set.open_date or submit_time > problem_set.due_date:
            return SubmissionOutcome(status=SubmissionStatus.SET_CLOSED, notices=[MSG_SET_CLOSED, *notices])
        return SubmissionOutcome(status=SubmissionStatus.NOT_RECORDED, notices=[MSG_NOT_RECORDED, *notices])

    score = compute_reduced_score(ce, pure_problem, problem_set, pg.recorded_score, submit_time)
    if score > problem.status:
        problem.status = score
    if tracks_full_status(ce, problem_set, submit_time):
        problem.sub_status = problem.status
    problem.attempted = True
    problem.num_correct = pg.num_of_correct_ans
    problem.num_incorrect = pg.num_of_incorrect_ans
    sync_attempt(problem, pure_problem)

    if is_essay and ProblemFlag.NEEDS_GRADING not in pure_problem.flags:
        pure_problem.flags.discard(ProblemFlag.GRADED)
        pure_problem.flags.add(ProblemFlag.NEEDS_GRADING)
        problem.flags = set(pure_problem.flags)
    _update_global_essay_flag(ce, problem, is_essay)

    if db.put_user_problem(ce.course_id, pure_problem):
        outcome = SubmissionOutcome(status=SubmissionStatus.RECORDED, notices=[MSG_RECORDED])
    else:
        outcome = SubmissionOutcome(status=SubmissionStatus.STORAGE_FAILURE, notices=[MSG_STORAGE_FAILURE])

    outcome.notices.extend(_log_past_answer(ce, problem, submit_time, scores, past_answers_string, log_answers))
    _write_transaction(ce, problem, pure_problem)

    if problem_set.assignment_type == "jitar" and problem_set.email_instructor:
        _notify_unfinished_review(ce, authz, problem, mail_sender)

    if ce.caliper_enabled and ce.answer_log_path is not None and log_answers:
        _send_caliper_events(ce, sensor or CaliperSensor(ce), problem, problem_set, pg, options.start_time)

    if ce.lti_grade_mode and ce.lti_grade_on_submit:
        sent = _submit_lms_grade(ce, grader or LTIGradeSubmitter(ce), problem)
        outcome.lms_synced = sent
        outcome.notices.append(MSG_LMS_SENT if sent else MSG_LMS_NOT_SENT)

    return outcome


def _update_global_essay_flag(ce: CourseEnvironment, problem: MergedProblem, is_essay: bool) -> None:
    """Keep the set-wide ``essay`` tag in step with the latest submission.

    Unlocked: concurrent submissions to the same global problem may race here.
    """

    global_problem = db.get_global_problem(ce.course_id, problem.set_id, problem.problem_id)
    if global_problem is None:
        logger.warning("No global problem %s/%s; essay flag not updated", problem.set_id, problem.problem_id)
        return
    has_flag = ProblemFlag.ESSAY in global_problem.flags
    if is_essay == has_flag:
        return
    if is_essay:
        global_problem.flags.add(ProblemFlag.ESSAY)
    else:
        global_problem.flags.discard(ProblemFlag.ESSAY)
    if not db.put_global_problem(ce.course_id, global_problem):
        logger.warning("Could not update essay flag on %s/%s", problem.set_id, problem.problem_id)


def _log_past_answer(
    ce: CourseEnvironment,
    problem: MergedProblem,
    submit_time: float,
    scores: str,
    past_answers_string: str,
    log_answers: bool,
) -> List[str]:
    if ce.answer_log_path is None or not log_answers:
        return []

    # Truncate so the stored time is never later than the submission.
    timestamp = int(submit_time)
    write_course_log(
        ce,
        "answer_log",
        f"|{problem.user_id}|{problem.set_id}|{problem.problem_id}|{scores}\t{timestamp}\t{past_answers_string}",
        timestamp,
    )
    answer_id = db.add_past_answer(
        PastAnswer(
            course_id=ce.course_id,
            user_id=problem.user_id,
            set_id=problem.set_id,
            problem_id=problem.problem_id,
            timestamp=timestamp,
            scores=scores,
            answer_string=past_answers_string,
            source_file=problem.source_file,
        )
    )
    return [] if answer_id is not None else [MSG_PAST_ANSWER_FAILED]


def _write_transaction(ce: CourseEnvironment, problem: MergedProblem, pure_problem: UserProblem) -> None:
    fields: List[Any] = [
        problem.problem_id,
        problem.set_id,
        problem.user_id,
        problem.source_file,
        problem.value,
        problem.max_attempts,
        problem.problem_seed,
        pure_problem.status,
        int(pure_problem.attempted),
        pure_problem.last_answer,
        pure_problem.num_correct,
        pure_problem.num_incorrect,
    ]
    write_course_log(ce, "transaction", "\t".join(str(field) for field in fields))


def _send_caliper_events(
    ce: CourseEnvironment,
    sensor: CaliperSensor,
    problem: MergedProblem,
    problem_set: MergedSet,
    pg: GradedState,
    start_time: Optional[float],
) -> None:
    try:
        events = submission_events(ce, problem, problem_set, pg, start_time, time.time())
        sensor.send_events(problem.user_id, events)
    except Exception as exc:
        logger.warning("Caliper events for %s/%s not sent: %s", problem.set_id, problem.problem_id, exc)


def _notify_unfinished_review(
    ce: CourseEnvironment,
    authz: Authz,
    problem: MergedProblem,
    mail_sender: Callable[[CourseEnvironment, Any], None],
) -> None:
    top = db.get_merged_problem(ce.course_id, problem.user_id, problem.set_id, jitar_top_level_id(problem.problem_id))
    if top is None:
        return
    set_problems = db.list_merged_problems(ce.course_id, problem.user_id, problem.set_id)
    if not jitar_problem_finished(top, set_problems) or jitar_problem_adjusted_status(top, set_problems) >= 1:
        return
    problem_url = f"{ce.course_url()}/{problem.set_id}/{top.problem_id}/?effectiveUser={problem.user_id}"
    try:
        jitar_send_warning_email(ce, authz, top, problem_url=problem_url, send=mail_sender)
    except Exception as exc:
        logger.warning("JITAR warning for %s/%s not sent: %s", problem.set_id, top.problem_id, exc)


def _submit_lms_grade(ce: CourseEnvironment, grader: LTIGradeSubmitter, problem: MergedProblem) -> bool:
    try:
        if ce.lti_grade_mode == "course":
            return bool(grader.submit_course_grade(problem.user_id))
        if ce.lti_grade_mode == "homework":
            return bool(grader.submit_set_grade(problem.user_id, problem.set_id))
    except Exception as exc:
        logger.warning("LMS grade passback for %s raised: %s", problem.user_id, exc)
        return False
    logger.warning("Unknown LTI grade mode '%s'", ce.lti_grade_mode)
    return False


# ---------------------------------------------------------------------------
# JITAR instructor notification
# ---------------------------------------------------------------------------

_SUBJECT_CODE = re.compile(r"%([cuspxr%])")

_WARNING_BODY = """
This message was automatically generated by WeBWorK.

User {full_name} ({user_id}) has not successfully completed the review for problem {problem_label} in set {set_id}.
Their final adjusted score on the problem is {status}.

Click this link to visit the problem: {problem_url}

User ID:    {user_id}
Name:       {full_name}
Email:      {email}
Student ID: {student_id}
Section:    {section}
Recitation: {recitation}
Comment:    {comment}
"""


def jitar_send_warning_email(
    ce: CourseEnvironment,
    authz: Authz,
    user_problem: MergedProblem,
    *,
    problem_url: str,
    send: Callable[[CourseEnvironment, Any], None] = send_email,
) -> bool:
    """Tell instructors a student finished a JITAR problem tree without full credit.

    Returns True when the message was handed to the mail server. Delivery
    problems are logged and never raised.
    """

    user_id = user_problem.user_id
    set_id = user_problem.set_id
    user = db.get_user(ce.course_id, user_id)
    if user is None:
        logger.warning("Couldn't get user %s from database; JITAR warning not sent", user_id)
        return False

    status = jitar_problem_adjusted_status(user_problem, db.list_merged_problems(ce.course_id, user_id, set_id))
    status_text = f"{status * 100:.0f}%"
    problem_label = format_jitar_id(user_problem.problem_id)

    recipients: List[str] = []
    for candidate in authz.users_with_permission("score_sets", db.list_users(ce.course_id)):
        if candidate.email_address and candidate.email_address not in recipients:
            recipients.append(candidate.email_address)
    for address in ce.feedback_recipients:
        if address not in recipients:
            recipients.append(address)
    if not recipients:
        logger.warning("No recipients for JITAR warning about %s/%s/%s", user_id, set_id, problem_label)
        return False

    sender = user.rfc822_mailbox or user.full_name or user_id

    subject_map = {
        "c": ce.course_id,
        "u": user_id,
        "s": set_id,
        "p": problem_label,
        "x": user.section,
        "r": user.recitation,
        "%": "%",
    }
    subject = _SUBJECT_CODE.sub(lambda m: subject_map.get(m.group(1)) or "", ce.feedback_subject_format)

    body = _WARNING_BODY.format(
        full_name=user.full_name,
        user_id=user_id,
        problem_label=problem_label,
        set_id=set_id,
        status=status_text,
        problem_url=problem_url,
        email=user.email_address,
        student_id=user.student_id,
        section=user.section,
        recitation=user.recitation,
        comment=user.comment,
    )
    headers = {
        "X-WeBWorK-Course": ce.course_id,
        "X-WeBWorK-User": user.user_id,
        "X-WeBWorK-Section": user.section,
        "X-WeBWorK-Recitation": user.recitation,
        "X-WeBWorK-Set": set_id,
        "X-WeBWorK-Problem": problem_label,
    }
    message = build_message(sender, recipients, subject, body, headers)

    try:
        send(ce, message)
    except MailError as exc:
        logger.error("Failed to send JITAR alert message: %s", exc)
        return False
    logger.debug("Successfully sent JITAR alert message")
    return True
