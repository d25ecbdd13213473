"""Email rendering for scheduled notifications.

Two templates: meeting prep (prep-48h, prep-24h, mentor-prep) and immediate
feedback (feedback-immediate, addressed by role). Every email is built as
plain text plus HTML with inline styles for email clients.
"""

from dataclasses import dataclass
from html import escape

from .models import BatchRecipient, NotificationKind, ParticipantRole, TemplateMetadata


@dataclass(frozen=True)
class RenderedEmail:
    subject: str
    text: str
    html: str


_PREP_TIPS = (
    "Topics or questions you want to discuss",
    "Updates on action items from previous sessions",
    "Any challenges or wins you want to share",
    "Materials or links relevant to your conversation",
)

_STUDENT_FEEDBACK_TIPS = (
    "Your mentor improve future sessions",
    "Staff identify if you need additional support",
    "Improve the mentorship program overall",
)

_MENTOR_FEEDBACK_TIPS = (
    "Team engagement and progress level",
    "Any concerns or blockers discussed",
    "Action items and follow-up needs",
)


def render_email(
    kind: NotificationKind,
    recipient: BatchRecipient,
    event_id: str,
    metadata: TemplateMetadata,
    app_url: str,
    subject_prefix: str = "",
    test_mode: bool = False,
) -> RenderedEmail:
    """Render subject, text and HTML for one recipient."""
    name = recipient.recipient_name or "there"
    base_url = app_url.rstrip("/")
    # In test mode every email lands in one inbox, so keep the real address visible
    test_indicator = f" (to: {recipient.to})" if test_mode else ""

    if kind == NotificationKind.FEEDBACK_IMMEDIATE:
        subject, text, html = _feedback(recipient.role, name, metadata, f"{base_url}/sessions/{event_id}?tab=feedback")
    else:
        subject, text, html = _prep(kind, name, metadata, f"{base_url}/sessions/{event_id}?tab=preparation")

    return RenderedEmail(subject=f"{subject_prefix}{subject}{test_indicator}", text=text, html=html)


def _prep(kind: NotificationKind, name: str, metadata: TemplateMetadata, url: str) -> tuple[str, str, str]:
    if kind == NotificationKind.MENTOR_PREP:
        other = metadata.team_name or "your team"
        subject = f"Upcoming session with {other} tomorrow"
        urgency = "tomorrow"
        label = "Team"
    else:
        other = metadata.mentor_names[0] if metadata.mentor_names else "your mentor"
        urgency = "in 2 days" if kind == NotificationKind.PREP_48H else "tomorrow"
        subject = f"Submit meeting prep to unlock Zoom link - session {urgency}"
        label = "Mentor"
    link = metadata.prep_form_url or url

    text = (
        f"Prepare for Your Session\n"
        f"{'=' * 24}\n\n"
        f"Hi {name},\n\n"
        f"Your {metadata.event_type} with {other} is coming up {urgency}.\n"
        f"Submit your meeting prep to unlock access to the Zoom link.\n\n"
        f"  Date:    {metadata.event_date}\n"
        f"  Time:    {metadata.event_time}\n"
        f"  {label + ':':<8} {other}\n\n"
        f"Submit meeting prep: {link}\n\n"
        f"What to include in your prep:\n"
        + "".join(f"  - {tip}\n" for tip in _PREP_TIPS)
    )

    intro = (
        f"Your <strong>{escape(metadata.event_type)}</strong> with <strong>{escape(other)}</strong> "
        f"is coming up {urgency}. Submit your meeting prep to unlock access to the Zoom link."
    )
    notice = (
        "Your Zoom link is hidden until you submit your meeting prep, so both sides "
        "arrive prepared."
    )
    html = _layout(
        title="Prepare for Your Session",
        name=name,
        intro=intro,
        notice=notice,
        details=[("Date", metadata.event_date), ("Time", metadata.event_time), (label, other)],
        button=("Submit Meeting Prep", link),
        tips_heading="What to include in your prep",
        tips=_PREP_TIPS,
        footer="Once you submit your prep you get the meeting link immediately.",
    )
    return subject, text, html


def _feedback(role: ParticipantRole, name: str, metadata: TemplateMetadata, url: str) -> tuple[str, str, str]:
    link = metadata.feedback_form_url or url
    if role == ParticipantRole.STUDENT:
        other = metadata.mentor_names[0] if metadata.mentor_names else "your mentor"
        subject = f"How was your session with {other}?"
        title = "How Was Your Session?"
        label = "Mentor"
        notice = f"Your feedback helps {other} understand what's working and how to support you."
        tips_heading = "Your feedback helps"
        tips = _STUDENT_FEEDBACK_TIPS
    else:
        other = metadata.team_name or "the team"
        subject = f"Quick feedback on your session with {other}"
        title = "Quick Session Feedback"
        label = "Team"
        notice = "Capture notes, observations and follow-up items while they're fresh."
        tips_heading = "Things to capture"
        tips = _MENTOR_FEEDBACK_TIPS

    text = (
        f"{title}\n"
        f"{'=' * len(title)}\n\n"
        f"Hi {name},\n\n"
        f"Your {metadata.event_type} with {other} just ended.\n"
        f"While it's fresh in your mind, take a moment to share your thoughts.\n\n"
        f"  Date:    {metadata.event_date}\n"
        f"  Time:    {metadata.event_time}\n"
        f"  {label + ':':<8} {other}\n\n"
        f"Submit feedback: {link}\n\n"
        f"{tips_heading}:\n"
        + "".join(f"  - {tip}\n" for tip in tips)
        + "\nFeedback takes about 2 minutes and is confidential.\n"
    )

    intro = (
        f"Your <strong>{escape(metadata.event_type)}</strong> with <strong>{escape(other)}</strong> "
        f"just ended. While it's fresh in your mind, take a moment to share your thoughts."
    )
    html = _layout(
        title=title,
        name=name,
        intro=intro,
        notice=escape(notice),
        details=[("Date", metadata.event_date), ("Time", metadata.event_time), (label, other)],
        button=("Submit Feedback", link),
        tips_heading=tips_heading,
        tips=tips,
        footer="Feedback takes about 2 minutes and is confidential.",
    )
    return subject, text, html


def _layout(
    title: str,
    name: str,
    intro: str,
    notice: str,
    details: list[tuple[str, str]],
    button: tuple[str, str],
    tips_heading: str,
    tips: tuple[str, ...],
    footer: str,
) -> str:
    """`intro` and `notice` are trusted markup; everything else is escaped here."""
    detail_rows = "".join(
        f"""
                <tr>
                  <td style="padding:6px 0; color:#6b7280; font-size:13px; width:90px;">{escape(label)}</td>
                  <td style="padding:6px 0; color:#111827; font-size:14px; font-weight:600;">{escape(value)}</td>
                </tr>"""
        for label, value in details
    )
    tip_rows = "".join(
        f'\n            <li style="margin:0 0 4px;">{escape(tip)}</li>' for tip in tips
    )
    button_label, button_url = button

    return f"""\
<!DOCTYPE html>
<html lang="en" xmlns="http://www.w3.org/1999/xhtml">
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <title>{escape(title)}</title>
</head>
<body style="margin:0; padding:0; background-color:#f4f4f5; font-family:Calibri,Arial,Helvetica,sans-serif;">
  <table role="presentation" width="100%" cellpadding="0" cellspacing="0" style="background-color:#f4f4f5;">
    <tr><td align="center" style="padding:24px 16px;">
      <table role="presentation" width="600" cellpadding="0" cellspacing="0"
             style="background-color:#ffffff; border-radius:8px; box-shadow:0 1px 3px rgba(0,0,0,0.1);">
        <!-- Header -->
        <tr><td style="background-color:#0f172a; padding:20px 32px; border-radius:8px 8px 0 0;">
          <h1 style="margin:0; color:#ffffff; font-size:20px; font-weight:600;">{escape(title)}</h1>
        </td></tr>
        <!-- Body -->
        <tr><td style="padding:32px;">
          <p style="margin:0 0 16px; color:#334155; font-size:15px; line-height:1.6;">Hi {escape(name)},</p>
          <p style="margin:0 0 16px; color:#334155; font-size:15px; line-height:1.6;">{intro}</p>
          <p style="margin:16px 0; padding:16px 20px; background-color:#fef3c7; border:1px solid #fcd34d;
                    border-radius:6px; color:#92400e; font-size:14px; line-height:1.5;">{notice}</p>
          <table role="presentation" width="100%" cellpadding="0" cellspacing="0"
                 style="background-color:#f8fafc; border-radius:6px; margin:16px 0;">
            <tr><td style="padding:16px 20px;">
              <table role="presentation" width="100%" cellpadding="0" cellspacing="0">{detail_rows}
              </table>
            </td></tr>
          </table>
          <p style="margin:24px 0; text-align:center;">
            <a href="{escape(button_url, quote=True)}"
               style="display:inline-block; background-color:#1e40af; color:#ffffff; padding:12px 24px;
                      border-radius:6px; font-size:15px; font-weight:600; text-decoration:none;">{escape(button_label)}</a>
          </p>
          <p style="margin:16px 0 8px; color:#0f172a; font-size:14px; font-weight:600;">{escape(tips_heading)}</p>
          <ul style="margin:0; padding-left:20px; color:#475569; font-size:14px; line-height:1.6;">{tip_rows}
          </ul>
        </td></tr>
        <!-- Footer -->
        <tr><td style="padding:16px 32px; border-top:1px solid #e5e7eb;">
          <p style="margin:0; color:#9ca3af; font-size:11px; line-height:1.5;">{escape(footer)}</p>
        </td></tr>
      </table>
    </td></tr>
  </table>
</body>
</html>"""
