from __future__ import annotations

from dataclasses import dataclass
from datetime import date

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from billing_console.domain.models import (
    BindingCreate,
    Customer,
    CustomerCreate,
    CustomerProjectBinding,
    CustomerStatus,
    CustomerUpdate,
    Project,
    ProjectCreate,
    now_utc,
)
from billing_console.domain.periods import date_window_overlaps, month_dates
from billing_console.infra.db import get_engine
from billing_console.services.errors import ConflictError, NotFoundError


@dataclass(frozen=True)
class BillableCustomer:
    customer: Customer
    project_keys: list[str]
    project_ids: list[str]


def _normalize_non_empty(value: str, field_name: str) -> str:
    normalized = value.strip()
    if not normalized:
        raise ConflictError(f"{field_name} cannot be empty")
    return normalized


def binding_overlaps_month(binding: CustomerProjectBinding, month_start: date, month_end: date) -> bool:
    return date_window_overlaps(binding.start_date, binding.end_date, month_start, month_end)


def load_billable_customers(
    session: Session,
    billing_month: str,
    target_customer_id: str | None = None,
) -> list[BillableCustomer]:
    """ACTIVE customers with at least one active binding overlapping ``billing_month``."""
    month_start, month_end = month_dates(billing_month)
    statement = select(Customer).where(Customer.status == CustomerStatus.ACTIVE)
    if target_customer_id is not None:
        statement = statement.where(Customer.id == target_customer_id)
    customers = sorted(session.exec(statement).all(), key=lambda item: (item.name, item.id))
    if not customers:
        return []

    rows = session.exec(
        select(CustomerProjectBinding, Project)
        .where(CustomerProjectBinding.project_id == Project.id)
        .where(col(CustomerProjectBinding.customer_id).in_([item.id for item in customers]))
        .where(col(CustomerProjectBinding.is_active).is_(True))
    ).all()
    projects_by_customer: dict[str, dict[str, Project]] = {}
    for binding, project in rows:
        if binding_overlaps_month(binding, month_start, month_end):
            projects_by_customer.setdefault(binding.customer_id, {})[project.id] = project

    billable: list[BillableCustomer] = []
    for customer in customers:
        projects = projects_by_customer.get(customer.id)
        if not projects:
            continue
        ordered = sorted(projects.values(), key=lambda item: item.project_id)
        billable.append(
            BillableCustomer(
                customer=customer,
                project_keys=[item.project_id for item in ordered],
                project_ids=[item.id for item in ordered],
            )
        )
    return billable


class CustomerService:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    @staticmethod
    def _get_customer(session: Session, customer_id: str) -> Customer:
        row = session.get(Customer, customer_id)
        if row is None:
            raise NotFoundError("customer not found")
        return row

    def create_customer(self, payload: CustomerCreate) -> Customer:
        name = _normalize_non_empty(payload.name, "name")
        currency = _normalize_non_empty(payload.currency, "currency").upper()
        external_id = payload.external_id.strip() if payload.external_id else None
        with self._session() as session:
            row = Customer(
                external_id=external_id or None,
                name=name,
                currency=currency,
                payment_terms_days=payload.payment_terms_days,
                status=payload.status,
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("customer external_id already exists") from exc
            session.refresh(row)
            return row

    def list_customers(self, *, status: CustomerStatus | None = None) -> list[Customer]:
        with self._session() as session:
            statement = select(Customer)
            if status is not None:
                statement = statement.where(Customer.status == status)
            return sorted(session.exec(statement).all(), key=lambda item: item.name)

    def get_customer(self, customer_id: str) -> Customer:
        with self._session() as session:
            return self._get_customer(session, customer_id)

    def update_customer(self, customer_id: str, payload: CustomerUpdate) -> Customer:
        with self._session() as session:
            row = self._get_customer(session, customer_id)
            if payload.name is not None:
                row.name = _normalize_non_empty(payload.name, "name")
            if payload.currency is not None:
                row.currency = _normalize_non_empty(payload.currency, "currency").upper()
            if payload.payment_terms_days is not None:
                row.payment_terms_days = payload.payment_terms_days
            if payload.status is not None:
                row.status = payload.status
            row.updated_at = now_utc()
            session.add(row)
            session.commit()
            session.refresh(row)
            return row

    def create_project(self, payload: ProjectCreate) -> Project:
        project_key = _normalize_non_empty(payload.project_id, "project_id")
        with self._session() as session:
            row = Project(
                project_id=project_key,
                name=_normalize_non_empty(payload.name, "name"),
                provider=payload.provider,
                billing_account_id=payload.billing_account_id,
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("project already registered") from exc
            session.refresh(row)
            return row

    def list_projects(self) -> list[Project]:
        with self._session() as session:
            return sorted(session.exec(select(Project)).all(), key=lambda item: item.project_id)

    def bind_project(self, customer_id: str, payload: BindingCreate) -> CustomerProjectBinding:
        if payload.start_date and payload.end_date and payload.end_date < payload.start_date:
            raise ConflictError("end_date must not be earlier than start_date")
        with self._session() as session:
            _ = self._get_customer(session, customer_id)
            project = session.get(Project, payload.project_id)
            if project is None:
                project = session.exec(
                    select(Project).where(Project.project_id == payload.project_id)
                ).first()
            if project is None:
                raise NotFoundError("project not found")

            others = session.exec(
                select(CustomerProjectBinding)
                .where(CustomerProjectBinding.project_id == project.id)
                .where(CustomerProjectBinding.customer_id != customer_id)
                .where(col(CustomerProjectBinding.is_active).is_(True))
            ).all()
            new_start = payload.start_date
            new_end = payload.end_date
            for other in others:
                if date_window_overlaps(
                    other.start_date,
                    other.end_date,
                    new_start or date.min,
                    new_end or date.max,
                ):
                    raise ConflictError("project is already bound to another customer for this period")

            row = CustomerProjectBinding(
                customer_id=customer_id,
                project_id=project.id,
                start_date=new_start,
                end_date=new_end,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return row

    def list_bindings(self, customer_id: str) -> list[CustomerProjectBinding]:
        with self._session() as session:
            _ = self._get_customer(session, customer_id)
            rows = session.exec(
                select(CustomerProjectBinding).where(CustomerProjectBinding.customer_id == customer_id)
            ).all()
            return sorted(rows, key=lambda item: item.created_at)

    def deactivate_binding(self, customer_id: str, binding_id: str) -> CustomerProjectBinding:
        with self._session() as session:
            row = session.get(CustomerProjectBinding, binding_id)
            if row is None or row.customer_id != customer_id:
                raise NotFoundError("binding not found")
            row.is_active = False
            session.add(row)
            session.commit()
            session.refresh(row)
            return row
