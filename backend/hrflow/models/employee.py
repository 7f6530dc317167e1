from sqlalchemy import Boolean, Column, Float, ForeignKey, Integer, String, UniqueConstraint
from hrflow.core.database import Base

class Employee(Base):
    """Local mirror of the HR directory; only the fields workflows look at."""
    __tablename__ = "employees"
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, unique=True, index=True, nullable=True)   # login account, null for contractors
    company_id = Column(Integer, index=True, nullable=False)
    entity_id = Column(Integer, nullable=True)
    department_id = Column(Integer, index=True, nullable=True)
    sub_department_id = Column(Integer, nullable=True)
    designation_id = Column(Integer, nullable=True)
    level_id = Column(Integer, nullable=True)
    grade_id = Column(Integer, nullable=True)
    location_id = Column(Integer, nullable=True)
    employee_type_id = Column(Integer, nullable=True)
    branch_id = Column(Integer, nullable=True)
    region_id = Column(Integer, nullable=True)
    reporting_manager_id = Column(Integer, ForeignKey("employees.id"), nullable=True)
    secondary_reporting_manager_id = Column(Integer, ForeignKey("employees.id"), nullable=True)
    first_name = Column(String(128), nullable=False, default="")
    last_name = Column(String(128), nullable=True)
    email = Column(String(255), nullable=True)
    is_hod = Column(Boolean, default=False, nullable=False)              # head of department_id
    is_functional_head = Column(Boolean, default=False, nullable=False)  # functional head within department_id
    is_hr_admin = Column(Boolean, default=False, nullable=False)
    is_sub_admin = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p)

class LeaveBalance(Base):
    __tablename__ = "leave_balances"
    __table_args__ = (UniqueConstraint("employee_id", "leave_type_id", name="uq_leave_balance_emp_type"),)
    id = Column(Integer, primary_key=True)
    employee_id = Column(Integer, ForeignKey("employees.id"), index=True, nullable=False)
    leave_type_id = Column(Integer, nullable=False)
    available_balance = Column(Float, default=0.0, nullable=False)
