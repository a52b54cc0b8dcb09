"""
CRM Migration Hub - Workflow Recreation Guides

Workflows can be listed through the API but their trigger/action graph can't
be written back, so exports carry a readable guide per workflow for manual
recreation in the destination account.
"""

import json
from typing import Dict, Any, List

TRIGGER_LABELS = {
    "contact_created": "Contact Created",
    "contact_changed": "Contact Changed",
    "contact_tag": "Tag Added/Removed",
    "form_submitted": "Form Submitted",
    "appointment_booked": "Appointment Booked",
    "appointment_status": "Appointment Status Changed",
    "opportunity_created": "Opportunity Created",
    "opportunity_status": "Opportunity Status Changed",
    "pipeline_stage": "Pipeline Stage Changed",
    "inbound_message": "Message Received",
    "call_status": "Call Status Changed",
    "invoice_paid": "Invoice Paid",
    "birthday": "Birthday",
    "custom_date": "Custom Date",
    "webhook": "Webhook Received",
    "manual": "Manual Trigger",
}

ACTION_LABELS = {
    "send_sms": "Send SMS",
    "send_email": "Send Email",
    "add_tag": "Add Tag",
    "remove_tag": "Remove Tag",
    "update_contact": "Update Contact Field",
    "create_task": "Create Task",
    "add_note": "Add Note",
    "send_notification": "Send Internal Notification",
    "wait": "Wait/Delay",
    "condition": "If/Then Condition",
    "webhook": "Send Webhook",
    "add_to_workflow": "Add to Another Workflow",
    "remove_from_workflow": "Remove from Workflow",
    "create_opportunity": "Create Opportunity",
    "update_opportunity": "Update Opportunity",
    "assign_user": "Assign to User",
    "voicemail": "Send Ringless Voicemail",
    "call": "Make Phone Call",
}


def _humanize(value: str) -> str:
    return " ".join(word.capitalize() for word in value.replace("_", " ").split())


def format_trigger_type(trigger_type: str) -> str:
    return TRIGGER_LABELS.get(trigger_type) or _humanize(trigger_type)


def format_action_type(action_type: str) -> str:
    return ACTION_LABELS.get(action_type) or _humanize(action_type)


def format_delay(delay: Any) -> str:
    """Seconds (int/float), a preformatted string or {value, unit}."""
    if not delay:
        return "Immediately"
    if isinstance(delay, str):
        return delay
    if isinstance(delay, (int, float)):
        if delay < 60:
            return f"{delay} seconds"
        if delay < 3600:
            return f"{round(delay / 60)} minutes"
        if delay < 86400:
            return f"{round(delay / 3600)} hours"
        return f"{round(delay / 86400)} days"
    if isinstance(delay, dict) and delay.get("value") and delay.get("unit"):
        return f"{delay['value']} {delay['unit']}"
    return json.dumps(delay)


def _action_details(action: Dict[str, Any]) -> List[str]:
    kind = action.get("type")
    alt = action.get("actionType")
    details = []
    if kind == "send_sms" or alt == "sms":
        details.append(f'Message: "{action.get("message") or action.get("body") or "[Template]"}"')
    if kind == "send_email" or alt == "email":
        details.append(f'Subject: "{action.get("subject") or "[Template]"}"')
    if kind == "add_tag" or alt == "tag":
        details.append(f'Tag: "{action.get("tag") or action.get("tagName") or "[Tag Name]"}"')
    if kind == "wait" or alt == "delay":
        details.append(f"Wait: {format_delay(action.get('delay') or action.get('duration'))}")
    condition = action.get("conditions") or action.get("condition")
    if condition:
        details.append(f"Condition: {json.dumps(condition)}")
    return details


def convert_workflow_to_prompt(workflow: Dict[str, Any]) -> str:
    """Markdown guide describing a workflow's trigger and action sequence."""
    lines = [
        f"**WORKFLOW: {workflow.get('name') or 'Unnamed Workflow'}**",
        "",
        f"**Status:** {workflow.get('status') or 'Unknown'}",
        f"**ID:** {workflow.get('id')}",
        "",
    ]

    trigger = workflow.get("trigger")
    if not trigger and workflow.get("triggers"):
        trigger = workflow["triggers"][0]
    if trigger:
        lines.append("**TRIGGER:**")
        lines.append(f"- Type: {format_trigger_type(trigger.get('type') or trigger.get('name') or 'Unknown')}")
        if trigger.get("filters"):
            lines.append(f"- Filters: {json.dumps(trigger['filters'])}")
        lines.append("")

    actions = workflow.get("actions") or workflow.get("steps") or []
    if actions:
        lines.append("**SEQUENCE:**")
        for number, action in enumerate(actions, start=1):
            timing = format_delay(action.get("delay"))
            label = format_action_type(action.get("type") or action.get("actionType") or "Unknown")
            lines.append(f"{number}. [{timing}] {label}")
            lines.extend(f"   - {detail}" for detail in _action_details(action))
        lines.append("")

    trigger_label = format_trigger_type(trigger.get("type")) if trigger and trigger.get("type") else "as described above"
    lines.extend([
        "**TO RECREATE IN NEW ACCOUNT:**",
        "1. Go to Automation > Workflows > Create Workflow",
        f"2. Set trigger: {trigger_label}",
        "3. Add each action in sequence with specified delays",
        "4. Configure message templates with your branding",
        "5. Test with a sample contact before enabling",
        "",
        "---",
    ])
    return "\n".join(lines)
