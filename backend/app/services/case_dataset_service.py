"""
Persists a normalized case dataset, replacing the previous one wholesale.

The caller owns the transaction: nothing here commits, so a failure leaves the
previous dataset in place once the caller rolls back.
"""
from __future__ import annotations

from dataclasses import asdict
from datetime import datetime
from typing import Dict, List

from sqlalchemy.orm import Session

from app.db.models import (
    AttachmentOrigin,
    Case,
    ProcessAttachment,
    ProcessDetail,
    ProcessMovement,
    ProcessParty,
    ProcessSubject,
)
from app.services.processo_normalizer import CaseDataset


class CaseDatasetService:
    def _delete(self, db: Session, case_id: int, with_attachments: bool) -> List[ProcessAttachment]:
        kept: List[ProcessAttachment] = []
        if with_attachments:
            db.query(ProcessAttachment).filter(ProcessAttachment.case_id == case_id).delete(synchronize_session=False)
        else:
            kept = db.query(ProcessAttachment).filter(ProcessAttachment.case_id == case_id).all()
            for attachment in kept:
                attachment.movement_id = None
            db.flush()

        for model in (ProcessMovement, ProcessParty, ProcessSubject, ProcessDetail):
            db.query(model).filter(model.case_id == case_id).delete(synchronize_session=False)
        return kept

    def replace_case_dataset(
        self,
        db: Session,
        case: Case,
        dataset: CaseDataset,
        with_attachments: bool = True,
    ) -> Dict[str, int]:
        """
        Swap the case's detail, parties, subjects, movements and attachments
        for the ones in dataset. When with_attachments is False the request
        did not ask the provider for attachments, so the stored ones are kept
        and re-linked to the new movement rows.
        """
        number = dataset.process_number or case.process_number
        kept_attachments = self._delete(db, case.id, with_attachments)

        db.add(ProcessDetail(case_id=case.id, **asdict(dataset.detail)))
        for subject in dataset.subjects:
            db.add(ProcessSubject(case_id=case.id, process_number=number, code=subject.code, name=subject.name))
        for party in dataset.parties:
            db.add(ProcessParty(case_id=case.id, process_number=number, **asdict(party)))

        movement_ids: Dict[str, int] = {}
        for movement in dataset.movements:
            row = ProcessMovement(case_id=case.id, process_number=number, **asdict(movement))
            db.add(row)
            db.flush()
            movement_ids[movement.step_id] = row.id

        attachment_count = 0
        if with_attachments:
            for attachment in dataset.attachments:
                values = asdict(attachment)
                values["origin"] = AttachmentOrigin(values["origin"])
                db.add(ProcessAttachment(
                    case_id=case.id,
                    process_number=number,
                    movement_id=movement_ids.get(attachment.movement_step_id or ""),
                    **values,
                ))
                attachment_count += 1
        else:
            for attachment in kept_attachments:
                attachment.movement_id = movement_ids.get(attachment.movement_step_id or "")
            attachment_count = len(kept_attachments)

        case.last_synced_at = datetime.utcnow()
        if not case.instance and dataset.detail.instance is not None:
            case.instance = str(dataset.detail.instance)
        db.flush()

        return {
            "parties": len(dataset.parties),
            "subjects": len(dataset.subjects),
            "movements": len(dataset.movements),
            "attachments": attachment_count,
        }


case_dataset_service = CaseDatasetService()
