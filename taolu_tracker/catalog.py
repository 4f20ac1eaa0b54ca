"""
Reference Catalog Client.

Read-only access to forms, deduction codes and age groups.
The tracker never writes these tables; it reads them to
validate input and to label reports.
"""

import logging
from typing import Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from database.models_taolu import AgeGroup, DeductionCode, TaoluForm

from .errors import ValidationError

logger = logging.getLogger(__name__)


class ReferenceCatalog:
    """Accessor for catalog entities by ID."""

    def __init__(self, db: Session):
        self.db = db

    # ---------------------------------------------------------
    # FORMS
    # ---------------------------------------------------------

    def get_form(self, form_id: Optional[str]) -> Optional[TaoluForm]:
        if not form_id:
            return None
        return self.db.get(TaoluForm, form_id)

    def require_form(self, form_id: Optional[str]) -> TaoluForm:
        """Get a form or fail input validation."""
        form = self.get_form(form_id)
        if form is None:
            raise ValidationError(f"Unknown taolu form: {form_id}", {"taolu_form_id": form_id})
        return form

    def forms_by_ids(self, form_ids: Iterable[str]) -> Dict[str, TaoluForm]:
        ids = {str(i) for i in form_ids if i}
        if not ids:
            return {}
        rows = self.db.query(TaoluForm).filter(TaoluForm.id.in_(ids)).all()
        return {row.id: row for row in rows}

    def list_forms(self, active_only: bool = True) -> List[TaoluForm]:
        query = self.db.query(TaoluForm)
        if active_only:
            query = query.filter(TaoluForm.is_active.is_(True))
        return query.order_by(TaoluForm.name).all()

    # ---------------------------------------------------------
    # DEDUCTION CODES
    # ---------------------------------------------------------

    def get_code(self, code_id: Optional[str]) -> Optional[DeductionCode]:
        if not code_id:
            return None
        return self.db.get(DeductionCode, code_id)

    def require_code(self, code_id: Optional[str]) -> DeductionCode:
        code = self.get_code(code_id)
        if code is None:
            raise ValidationError(f"Unknown deduction code: {code_id}", {"code_id": code_id})
        return code

    def codes_by_ids(self, code_ids: Iterable[Optional[str]]) -> Dict[str, DeductionCode]:
        ids = {str(i) for i in code_ids if i}
        if not ids:
            return {}
        rows = self.db.query(DeductionCode).filter(DeductionCode.id.in_(ids)).all()
        return {row.id: row for row in rows}

    def list_codes(self) -> List[DeductionCode]:
        return self.db.query(DeductionCode).order_by(DeductionCode.code_number).all()

    # ---------------------------------------------------------
    # AGE GROUPS
    # ---------------------------------------------------------

    def list_age_groups(self) -> List[AgeGroup]:
        return self.db.query(AgeGroup).order_by(AgeGroup.min_age).all()
