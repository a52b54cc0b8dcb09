"""
CRM Migration Hub - Export Service & Workflow Guide Tests
"""

import pytest

from services.migration import ExportService, build_adapters
from services.migration.workflow_prompts import (
    convert_workflow_to_prompt, format_delay, format_trigger_type, format_action_type
)
from fake_crm import SOURCE_LOCATION


SAMPLE_WORKFLOW = {
    "id": "wf-1",
    "name": "New Lead Nurture",
    "status": "published",
    "trigger": {"type": "form_submitted", "filters": {"formId": "f1"}},
    "actions": [
        {"type": "send_sms", "message": "Thanks for reaching out!"},
        {"type": "wait", "delay": 86400},
        {"type": "send_email", "subject": "Your booking link", "delay": 3600},
        {"type": "add_tag", "tag": "nurtured"},
        {"type": "custom_thing", "condition": {"field": "source"}},
    ]
}


class TestExportService:

    @pytest.mark.asyncio
    async def test_exports_every_category(self, fake_crm, source_credentials):
        fake_crm.records(SOURCE_LOCATION, "workflows").append(SAMPLE_WORKFLOW)
        service = ExportService(fake_crm.client_factory())

        document = await service.export_to_json(source_credentials)

        assert document["sourceLocationId"] == SOURCE_LOCATION
        assert document["version"] == "1.0"
        assert document["exportedAt"]
        assert [c["email"] for c in document["contacts"]] == [
            "ann@example.com", "bob@example.com", "cat@example.com"
        ]
        for category in ("calendars", "opportunities", "forms", "surveys", "tags", "users", "companies"):
            assert document[category] == []
        assert document["notes"] == []
        assert len(document["workflowPrompts"]) == 1
        assert document["workflowPrompts"][0]["workflowId"] == "wf-1"
        assert fake_crm.writes == []

    @pytest.mark.asyncio
    async def test_failed_category_becomes_empty_with_note(self, fake_crm, source_credentials):
        fake_crm.list_failures.add((SOURCE_LOCATION, "contacts"))
        service = ExportService(fake_crm.client_factory())

        document = await service.export_to_json(source_credentials)

        assert document["contacts"] == []
        assert len(document["notes"]) == 1
        assert "contacts" in document["notes"][0]

    @pytest.mark.asyncio
    async def test_page_cap_is_noted(self, fake_crm, source_credentials):
        service = ExportService(fake_crm.client_factory(), adapters=build_adapters(page_size=2, max_pages=1))

        document = await service.export_to_json(source_credentials)

        assert len(document["contacts"]) == 2
        assert document["notes"] == ["contacts: export truncated at 2 records (page cap)"]


class TestWorkflowPrompts:

    def test_known_and_unknown_labels(self):
        assert format_trigger_type("appointment_booked") == "Appointment Booked"
        assert format_trigger_type("some_new_trigger") == "Some New Trigger"
        assert format_action_type("voicemail") == "Send Ringless Voicemail"
        assert format_action_type("custom_thing") == "Custom Thing"

    def test_delay_formatting(self):
        assert format_delay(None) == "Immediately"
        assert format_delay(30) == "30 seconds"
        assert format_delay(120) == "2 minutes"
        assert format_delay(7200) == "2 hours"
        assert format_delay(172800) == "2 days"
        assert format_delay("next Monday") == "next Monday"
        assert format_delay({"value": 3, "unit": "days"}) == "3 days"

    def test_prompt_describes_trigger_and_sequence(self):
        prompt = convert_workflow_to_prompt(SAMPLE_WORKFLOW)

        assert "**WORKFLOW: New Lead Nurture**" in prompt
        assert "- Type: Form Submitted" in prompt
        assert '- Filters: {"formId": "f1"}' in prompt
        assert "1. [Immediately] Send SMS" in prompt
        assert '   - Message: "Thanks for reaching out!"' in prompt
        assert "2. [1 days] Wait/Delay" in prompt
        assert "   - Wait: 1 days" in prompt
        assert "3. [1 hours] Send Email" in prompt
        assert '   - Tag: "nurtured"' in prompt
        assert '   - Condition: {"field": "source"}' in prompt
        assert "2. Set trigger: Form Submitted" in prompt

    def test_prompt_for_bare_workflow(self):
        prompt = convert_workflow_to_prompt({"id": "wf-2"})

        assert "**WORKFLOW: Unnamed Workflow**" in prompt
        assert "**TRIGGER:**" not in prompt
        assert "**SEQUENCE:**" not in prompt
