"""
Tests for campaign endpoints.
"""
from conftest import wait_for_status
from outreachhq.errors import PermanentGenerationFailure
from outreachhq.models.queued_message import QueuedMessage


def create_ready_campaign(client, recipients, template=None):
    """Walk the wizard up to the instruction step."""
    campaign_id = client.post("/api/campaigns").json()["id"]
    client.post(f"/api/campaigns/{campaign_id}/recipients", json={"recipient_ids": [r.id for r in recipients]})
    client.post(f"/api/campaigns/{campaign_id}/name", json={"name": "Spring thank-you"})
    client.post(
        f"/api/campaigns/{campaign_id}/template",
        json={"template_id": template.id if template else None},
    )
    return campaign_id


class TestCampaignWizard:
    """Test campaign creation and the wizard steps."""

    def test_create_campaign(self, client):
        response = client.post("/api/campaigns")
        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "selecting_recipients"
        assert data["recipient_ids"] == []

    def test_wizard_steps(self, client, recipients, template, db):
        campaign_id = client.post("/api/campaigns").json()["id"]

        response = client.post(
            f"/api/campaigns/{campaign_id}/recipients",
            json={"recipient_ids": [recipients[1].id, recipients[0].id]},
        )
        assert response.status_code == 200
        assert response.json()["status"] == "naming"

        response = client.post(f"/api/campaigns/{campaign_id}/name", json={"name": "Gala follow-up"})
        assert response.json()["status"] == "selecting_template"

        response = client.post(f"/api/campaigns/{campaign_id}/template", json={"template_id": template.id})
        data = response.json()
        assert data["status"] == "writing_instruction"
        assert data["template"]["name"] == "Year-end appeal"
        assert data["recipient_ids"] == [recipients[1].id, recipients[0].id]

        db.refresh(template)
        assert template.use_count == 1

    def test_unknown_template(self, client, recipients):
        campaign_id = client.post("/api/campaigns").json()["id"]
        client.post(f"/api/campaigns/{campaign_id}/recipients", json={"recipient_ids": [recipients[0].id]})
        client.post(f"/api/campaigns/{campaign_id}/name", json={"name": "Gala"})

        response = client.post(f"/api/campaigns/{campaign_id}/template", json={"template_id": 999})
        assert response.status_code == 404
        assert client.get(f"/api/campaigns/{campaign_id}").json()["status"] == "selecting_template"

    def test_template_out_of_order_is_not_counted(self, client, template, db):
        campaign_id = client.post("/api/campaigns").json()["id"]

        response = client.post(f"/api/campaigns/{campaign_id}/template", json={"template_id": template.id})
        assert response.status_code == 409

        db.refresh(template)
        assert template.use_count == 0

    def test_duplicate_recipients_keep_first_occurrence_order(self, client, recipients):
        campaign_id = client.post("/api/campaigns").json()["id"]
        ids = [recipients[2].id, recipients[0].id, recipients[2].id, recipients[1].id, recipients[0].id]

        response = client.post(f"/api/campaigns/{campaign_id}/recipients", json={"recipient_ids": ids})
        assert response.json()["recipient_ids"] == [recipients[2].id, recipients[0].id, recipients[1].id]

    def test_empty_selection_is_a_validation_error(self, client):
        campaign_id = client.post("/api/campaigns").json()["id"]
        response = client.post(f"/api/campaigns/{campaign_id}/recipients", json={"recipient_ids": []})
        assert response.status_code == 422
        body = response.json()
        assert body["ok"] is False
        assert body["error_code"] == "VALIDATION_ERROR"

    def test_wrong_state_is_a_conflict(self, client):
        campaign_id = client.post("/api/campaigns").json()["id"]
        response = client.post(f"/api/campaigns/{campaign_id}/instruction", json={"text": "Too early"})
        assert response.status_code == 409
        assert response.json()["error_code"] == "CONFLICT"

    def test_unknown_campaign(self, client):
        response = client.get("/api/campaigns/does-not-exist")
        assert response.status_code == 404
        assert response.json()["error_code"] == "NOT_FOUND"

    def test_list_campaigns(self, client, recipients):
        first = client.post("/api/campaigns").json()["id"]
        create_ready_campaign(client, recipients)

        response = client.get("/api/campaigns")
        assert response.status_code == 200
        body = response.json()
        assert body["pagination"]["total"] == 2

        response = client.get("/api/campaigns", params={"status": "selecting_recipients"})
        assert [c["id"] for c in response.json()["data"]] == [first]


class TestCampaignGeneration:
    """Test generation, review and send over HTTP."""

    def test_full_flow(self, client, recipients, template, db, generation_service):
        campaign_id = create_ready_campaign(client, recipients, template)

        response = client.post(f"/api/campaigns/{campaign_id}/instruction", json={"text": "Thank them warmly"})
        assert response.status_code == 202
        assert response.json()["status"] in ("generating", "reviewing")

        data = wait_for_status(client, campaign_id, "reviewing")
        assert data["progress"]["succeeded"] == 3
        assert generation_service.calls[0]["template"]["id"] == template.id

        progress = client.get(f"/api/campaigns/{campaign_id}/progress").json()
        assert progress["pending"] == 0
        assert progress["total"] == 3

        history = client.get(f"/api/campaigns/{campaign_id}/history").json()
        assert [t["sequence"] for t in history["turns"]] == [1]

        drafts = client.get(f"/api/campaigns/{campaign_id}/drafts").json()["drafts"]
        assert [d["recipient_id"] for d in drafts] == [r.id for r in recipients]

        first_id = recipients[0].id
        response = client.put(
            f"/api/campaigns/{campaign_id}/drafts/{first_id}",
            json={"subject": "Hand-written", "body": "Thank you, Ada."},
        )
        assert response.status_code == 200
        assert response.json()["effective_subject"] == "Hand-written"

        response = client.post(f"/api/campaigns/{campaign_id}/drafts/{first_id}/approve", json={"approved": True})
        assert response.json()["approved"] is True

        response = client.post(f"/api/campaigns/{campaign_id}/send")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "sent"
        assert data["queued"] == 3

        queued = db.query(QueuedMessage).order_by(QueuedMessage.position).all()
        assert [q.recipient_id for q in queued] == [r.id for r in recipients]
        assert queued[0].subject == "Hand-written"
        assert {q.campaign_id for q in queued} == {campaign_id}

    def test_refinement_round(self, client, recipients):
        campaign_id = create_ready_campaign(client, recipients)
        client.post(f"/api/campaigns/{campaign_id}/instruction", json={"text": "Thank them"})
        wait_for_status(client, campaign_id, "reviewing")

        second_id = recipients[1].id
        client.put(
            f"/api/campaigns/{campaign_id}/drafts/{second_id}",
            json={"subject": "Kept", "body": "Kept body"},
        )

        response = client.post(f"/api/campaigns/{campaign_id}/regenerate", json={"text": "Mention the gala"})
        assert response.status_code == 202
        wait_for_status(client, campaign_id, "reviewing")

        drafts = {d["recipient_id"]: d for d in client.get(f"/api/campaigns/{campaign_id}/drafts").json()["drafts"]}
        assert drafts[second_id]["effective_subject"] == "Kept"
        assert drafts[second_id]["body"].endswith("Mention the gala")
        assert drafts[recipients[0].id]["effective_body"].endswith("Mention the gala")

        response = client.delete(f"/api/campaigns/{campaign_id}/drafts/{second_id}/override")
        assert response.json()["manual_override"] is False

        history = client.get(f"/api/campaigns/{campaign_id}/history").json()["turns"]
        assert [t["text"] for t in history] == ["Thank them", "Mention the gala"]

    def test_failed_run_and_retry(self, client, recipients, generation_service):
        for r in recipients:
            generation_service.script[r.id] = [PermanentGenerationFailure("rejected", kind="validation")]
        campaign_id = create_ready_campaign(client, recipients)

        client.post(f"/api/campaigns/{campaign_id}/instruction", json={"text": "Thank them"})
        data = wait_for_status(client, campaign_id, "writing_instruction")
        assert data["last_error"] == "Failed to generate emails. Please try again."
        assert data["can_retry"] is True

        response = client.post(f"/api/campaigns/{campaign_id}/retry")
        assert response.status_code == 202
        data = wait_for_status(client, campaign_id, "reviewing")
        assert data["draft_counts"]["succeeded"] == 3
        assert data["turns"] == 1

    def test_send_blocked_by_failed_draft(self, client, recipients, generation_service):
        failing_id = recipients[2].id
        generation_service.script[failing_id] = [PermanentGenerationFailure("rejected", kind="validation")]
        campaign_id = create_ready_campaign(client, recipients)
        client.post(f"/api/campaigns/{campaign_id}/instruction", json={"text": "Thank them"})
        data = wait_for_status(client, campaign_id, "reviewing")
        assert data["last_error"] == "1 of 3 emails failed to generate"

        response = client.post(f"/api/campaigns/{campaign_id}/send")
        assert response.status_code == 422
        assert response.json()["details"]["recipient_ids"] == [failing_id]

        client.post(f"/api/campaigns/{campaign_id}/drafts/{failing_id}/exclude", json={"excluded": True})
        response = client.post(f"/api/campaigns/{campaign_id}/send")
        assert response.status_code == 200
        assert response.json()["queued"] == 2

    def test_blank_edit_rejected(self, client, recipients):
        campaign_id = create_ready_campaign(client, recipients)
        client.post(f"/api/campaigns/{campaign_id}/instruction", json={"text": "Thank them"})
        wait_for_status(client, campaign_id, "reviewing")

        response = client.put(
            f"/api/campaigns/{campaign_id}/drafts/{recipients[0].id}",
            json={"subject": "", "body": "Body"},
        )
        assert response.status_code == 422

    def test_reopen_and_abandon(self, client, recipients):
        campaign_id = create_ready_campaign(client, recipients)
        client.post(f"/api/campaigns/{campaign_id}/instruction", json={"text": "Thank them"})
        wait_for_status(client, campaign_id, "reviewing")

        response = client.post(f"/api/campaigns/{campaign_id}/reopen")
        data = response.json()
        assert data["status"] == "writing_instruction"
        assert data["edit_mode"] is True

        response = client.put(
            f"/api/campaigns/{campaign_id}/recipients",
            json={"recipient_ids": [recipients[0].id]},
        )
        assert response.json()["recipient_ids"] == [recipients[0].id]

        response = client.post(f"/api/campaigns/{campaign_id}/abandon")
        assert response.json()["status"] == "abandoned"

        response = client.post(f"/api/campaigns/{campaign_id}/abandon")
        assert response.status_code == 409


class TestHealth:
    """Test ambient endpoints."""

    def test_health(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_security_headers(self, client):
        response = client.get("/api/health")
        assert response.headers["X-Content-Type-Options"] == "nosniff"

    def test_events_status(self, client):
        response = client.get("/api/events/status")
        assert response.json()["ok"] is True
