"""
Input validation rules for directory entries.

Each validator returns (is_valid, error_message) so callers can collect every
problem on a form before rejecting it.
"""
import re
from datetime import date
from typing import Optional, Tuple

import config

USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_]{4,20}$")
PIN_PATTERN = re.compile(r"^[0-9]{6}$")
NAME_PATTERN = re.compile(r"^[A-Za-z ]{2,40}$")
DEPARTMENT_PATTERN = re.compile(r"^[A-Za-z ]+$")

VALID_ROLES = ("Admin", "Staff", "Student")

Result = Tuple[bool, Optional[str]]


def validate_username(username: str) -> Result:
    """4-20 characters: letters, digits, underscore."""
    if not username or not USERNAME_PATTERN.match(username):
        return False, "Username must be 4-20 characters (letters, numbers, underscore)."
    return True, None


def validate_password(password: str) -> Result:
    """
    Validate password strength.

    Requirements:
    - Minimum 8 characters
    - At least 1 uppercase, 1 lowercase letter and 1 number
    - Maximum 72 bytes (bcrypt limit)
    """
    if not password:
        return False, "Password is required."
    if len(password) < 8:
        return False, "Password must be at least 8 characters long."
    if len(password.encode("utf-8")) > 72:
        return False, "Password cannot be longer than 72 bytes."
    if not any(c.islower() for c in password) or not any(c.isupper() for c in password):
        return False, "Password must contain upper and lower case letters."
    if not any(c.isdigit() for c in password):
        return False, "Password must contain at least one number."
    return True, None


def validate_pin(pin: Optional[str]) -> Result:
    if not pin or not PIN_PATTERN.match(pin):
        return False, "Admin PIN must be exactly 6 digits."
    return True, None


def validate_school_email(email: Optional[str]) -> Result:
    """
    Address must be on the institution's domain.
    Syntax is checked earlier by pydantic ``EmailStr``.
    """
    value = (email or "").strip()
    if not value:
        return False, "Email address is required."
    if not value.lower().endswith("@" + config.SCHOOL_EMAIL_DOMAIN):
        return False, f"Email must end with @{config.SCHOOL_EMAIL_DOMAIN}."
    return True, None


def validate_name(name: Optional[str], label: str = "Name") -> Result:
    if not name or not NAME_PATTERN.match(name):
        return False, f"{label} must contain only letters and spaces (2-40 characters)."
    return True, None


def validate_role(role: Optional[str]) -> Result:
    if role not in VALID_ROLES:
        return False, "Invalid role."
    return True, None


def validate_department(department: Optional[str]) -> Result:
    if not department:
        return True, None
    if not DEPARTMENT_PATTERN.match(department):
        return False, "Department must contain letters and spaces only."
    return True, None


def validate_salary(salary: Optional[float]) -> Result:
    if salary is None:
        return True, None
    if salary < 0:
        return False, "Salary must be a non-negative number."
    return True, None


def validate_hire_date(hire_date: Optional[date], today: Optional[date] = None) -> Result:
    today = today or date.today()
    if hire_date is None or hire_date > today:
        return False, "Hire date must be a valid date, not in the future."
    return True, None


def validate_dob(dob: Optional[date], today: Optional[date] = None) -> Result:
    today = today or date.today()
    if dob is None or dob >= today:
        return False, "Date of birth must be a valid past date."
    return True, None


def validate_age(age: Optional[int]) -> Result:
    if age is None or not 5 <= age <= 100:
        return False, "Age must be between 5 and 100."
    return True, None


def validate_gpa(gpa: Optional[float]) -> Result:
    if gpa is None:
        return True, None
    if not 0 <= gpa <= 4:
        return False, "GPA must be between 0.0 and 4.0."
    return True, None
