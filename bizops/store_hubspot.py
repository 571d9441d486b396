from __future__ import annotations

import logging
from typing import Any

logger = logging.getLogger(__name__)

CLOSED_WON_STAGES = ("closedwon", "closed_won", "won", "closed - won", "qualifiedtobuy")
MEETING_SUCCESS_OUTCOMES = ("completed", "scheduled", "showed", "attended", "rescheduled")


def is_closed_won(stage: str) -> bool:
    value = stage.lower()
    return any(marker in value for marker in CLOSED_WON_STAGES)


def is_successful_meeting(outcome: str) -> bool:
    value = outcome.lower()
    return any(marker in value for marker in MEETING_SUCCESS_OUTCOMES)


class StoreHubspotMixin:
    """CRM events from HubSpot: attribution links and settlement triggers."""

    def handle_hubspot_events(self, *, events: list[dict[str, Any]]) -> dict[str, Any]:
        logger.info("hubspot_events_received count=%s", len(events))
        results: list[dict[str, Any]] = []
        for event in events:
            event_id = str(event["eventId"])
            self.webhook_events_repository.log(
                source="hubspot",
                event_id=event_id,
                event_type=str(event["subscriptionType"]),
                payload=dict(event),
            )
            try:
                outcome = self._dispatch_hubspot_event(event)
            except Exception as exc:
                # one bad event must not stop the rest of the batch
                logger.warning("hubspot_event_failed event_id=%s error=%s", event_id, exc)
                self.webhook_events_repository.mark_processed(
                    source="hubspot",
                    event_id=event_id,
                    processed=False,
                    error_message=str(exc),
                )
                results.append({"eventId": event["eventId"], "processed": False, "message": str(exc)})
                continue
            self.webhook_events_repository.mark_processed(
                source="hubspot",
                event_id=event_id,
                processed=True,
                result=outcome,
            )
            results.append({"eventId": event["eventId"], **outcome})
        return {"results": results}

    def _dispatch_hubspot_event(self, event: dict[str, Any]) -> dict[str, Any]:
        subscription = str(event["subscriptionType"])
        object_id = str(event["objectId"])
        prop = event.get("propertyName")
        value = str(event.get("propertyValue") or "")
        if subscription == "contact.creation":
            return self._hubspot_entity_created(event, "contact_created", f"Contact {object_id} logged for attribution")
        if subscription == "deal.creation":
            return self._hubspot_deal_created(event)
        if subscription == "deal.propertyChange" and prop == "dealstage":
            return self._hubspot_deal_stage_changed(object_id, value)
        if subscription == "meeting.creation":
            return self._hubspot_meeting_created(event)
        if subscription == "meeting.propertyChange" and prop == "hs_meeting_outcome":
            return self._hubspot_meeting_outcome(object_id, value or "completed")
        if subscription == "company.creation":
            return self._hubspot_entity_created(event, "company_created", f"Company {object_id} logged for attribution")
        if "association" in subscription:
            return self._hubspot_entity_created(event, subscription, "Association logged for attribution")
        return {"processed": False, "message": f"Unhandled event type: {subscription}"}

    def _hubspot_entity_created(self, event: dict[str, Any], link_type: str, message: str) -> dict[str, Any]:
        self.webhook_events_repository.link_crm_entity(
            object_id=str(event["objectId"]),
            link_type=link_type,
            metadata={
                "portal_id": event.get("portalId"),
                "event_id": event.get("eventId"),
                "event_type": event.get("subscriptionType"),
                "occurred_at": event.get("occurredAt"),
            },
        )
        return {"processed": True, "message": message}

    def _hubspot_deal_created(self, event: dict[str, Any]) -> dict[str, Any]:
        deal_id = str(event["objectId"])
        for contract in self.settlements_repository.active_contracts(source="hubspot"):
            self.settlements_repository.create_confirmation(
                contract=contract,
                source="hubspot",
                trigger_event={"hubspot_deal_id": deal_id, "portal_id": event.get("portalId")},
            )
        return {"processed": True, "message": f"Deal {deal_id} pending confirmation created"}

    def _hubspot_deal_stage_changed(self, deal_id: str, stage: str) -> dict[str, Any]:
        if not is_closed_won(stage):
            return {"processed": False, "message": f'Stage "{stage}" does not trigger payout'}

        matching = [
            c
            for c in self.settlements_repository.pending_confirmations(source="hubspot")
            if str((c.get("trigger_event") or {}).get("hubspot_deal_id")) == deal_id
        ]
        if not matching:
            contracts = self.settlements_repository.active_contracts(source="hubspot")
            if not contracts:
                return {"processed": False, "message": f"No pending confirmations for deal {deal_id}"}
            for contract in contracts:
                conditions = contract.get("trigger_conditions") or {}
                if contract.get("trigger_type") == "revenue_received" or conditions.get("deal_stage") == "closedwon":
                    self.execute_settlement(
                        contract_id=str(contract["contract_id"]),
                        trigger_event={
                            "source": "hubspot",
                            "event_type": "deal_closed_won",
                            "hubspot_deal_id": deal_id,
                            "stage": stage,
                        },
                        external_confirmed=True,
                    )
            return {"processed": True, "message": f"Triggered settlements for closed-won deal {deal_id}"}

        for confirmation in matching:
            self.settlements_repository.confirm(
                confirmation_id=str(confirmation["confirmation_id"]),
                confirmation_data={"stage": stage, "confirmed_by": "hubspot_webhook"},
            )
            self.execute_settlement(
                contract_id=str(confirmation["contract_id"]),
                trigger_event={
                    "source": "hubspot",
                    "event_type": "deal_stage_confirmed",
                    "hubspot_deal_id": deal_id,
                    "stage": stage,
                    "confirmation_id": confirmation["confirmation_id"],
                },
                external_confirmed=True,
            )
        return {"processed": True, "message": f"Confirmed {len(matching)} settlements for deal {deal_id}"}

    def _hubspot_meeting_created(self, event: dict[str, Any]) -> dict[str, Any]:
        meeting_id = str(event["objectId"])
        for contract in self.settlements_repository.active_contracts(source="hubspot", revenue_source_type="meeting_fee"):
            self.settlements_repository.create_confirmation(
                contract=contract,
                source="hubspot",
                trigger_event={"hubspot_meeting_id": meeting_id, "portal_id": event.get("portalId")},
            )
        return {"processed": True, "message": f"Meeting {meeting_id} pending confirmation created"}

    def _hubspot_meeting_outcome(self, meeting_id: str, outcome: str) -> dict[str, Any]:
        if not is_successful_meeting(outcome):
            return {"processed": False, "message": f'Meeting outcome "{outcome}" does not trigger payout'}
        contracts = self.settlements_repository.active_contracts(source="hubspot", revenue_source_type="meeting_fee")
        if not contracts:
            return {"processed": False, "message": "No meeting-based contracts found"}
        for contract in contracts:
            self.execute_settlement(
                contract_id=str(contract["contract_id"]),
                trigger_event={
                    "source": "hubspot",
                    "event_type": "meeting_confirmed",
                    "hubspot_meeting_id": meeting_id,
                    "outcome": outcome,
                },
                external_confirmed=True,
            )
        return {"processed": True, "message": f"Triggered {len(contracts)} meeting-based settlements"}
