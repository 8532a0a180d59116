"""Student lookups. Stands in for the SLUDI identity and NDX subsidy registries."""
import logging

logger = logging.getLogger(__name__)

STUDENTS = {
    "std_001": {
        "id": "std_001",
        "name": "Kasun Perera",
        "school": "Royal College",
        "grade": "10A",
        "subsidyEligible": True,
        "dietaryRestrictions": ["vegetarian"],
        "parentId": "par_001",
    },
    "std_002": {
        "id": "std_002",
        "name": "Nimal Silva",
        "school": "Royal College",
        "grade": "9B",
        "subsidyEligible": False,
        "dietaryRestrictions": [],
        "parentId": "par_002",
    },
}


class StudentService:
    def __init__(self, students=None):
        self.students = students if students is not None else STUDENTS

    def get_student(self, student_id):
        return self.students.get(student_id)

    def get_subsidy_eligibility(self, student_id):
        student = self.students.get(student_id)
        if not student:
            return None
        return {
            "eligible": student["subsidyEligible"],
            "program": "Government School Meal Program",
        }
