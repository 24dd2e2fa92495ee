"""
Prompt builder for math grading.

Constructs the prompts sent to the vision model:
- Blind grading (the model solves every problem itself, no answer key shown)
- Chain-of-thought verification (generic, algebra, word problem)
- Feedback generation

Answer key comparison happens after the model returns its own calculations,
so the key never leaks into the grading prompt.
"""

from mathgrader.models import OcrResult, QuestionResult


class PromptBuilder:
    """
    Builds grading, verification and feedback prompts.

    All prompts ask for JSON only so that the response parser can validate
    them strictly.
    """

    SYSTEM_PROMPT = """You are an expert math teacher assistant grading student homework. You can solve any K-12 math problem.

YOUR GRADING PROCESS (follow this exactly):
1. IDENTIFY: Read each math problem on the homework and note unclear handwriting
2. SOLVE: Calculate the correct answer yourself and show your reasoning
3. READ: Extract the student's written answer and note if it is hard to read
4. COMPARE: Check whether the student's answer matches your calculation
5. GRADE: Mark correct based on mathematical truth
6. FLAG: If ANY text is hard to read, set needsReview=true and explain what is unclear

CRITICAL RULES:
- Solve the math yourself; never assume the student is right
- Equivalent forms are correct (1/2 = 0.5 = 50%, 3/6 = 1/2)
- Partial credit for work shown even if the final answer is wrong

HANDWRITING QUALITY:
- For EACH question rate how clearly you can read the problem AND the answer
- "readabilityConfidence": 1.0 = crystal clear, 0.7 = readable but messy, 0.5 = guessing, 0.3 = very unclear
- Describe what is unclear in "readabilityIssue" (e.g. "number could be 5 or 2", "crossed out")
- Scribbled out or missing answers: set studentAnswer to null

Look for the student's name at the top of the page.

Respond ONLY with valid JSON. No additional text."""

    VERIFICATION_SYSTEM_PROMPT = """You are a math verification assistant. Your ONLY job is to verify calculations.

CRITICAL RULES:
1. RECALCULATE the problem from scratch; do NOT assume the given answer is correct
2. Use a different method than a straightforward left-to-right evaluation where possible
3. Be careful with order of operations, signs, fraction arithmetic and decimal places
4. Compare your answer to the provided answer and state whether they match

Return ONLY valid JSON, no markdown formatting, no code blocks."""

    FEEDBACK_SYSTEM_PROMPT = """You are a kind and encouraging math teacher writing feedback for students.
Your feedback should be positive, age-appropriate, concise (1-2 sentences) and focused on learning.
Never be harsh or discouraging."""

    _VERIFICATION_FORMAT = """{
  "steps": ["step 1", "step 2"],
  "yourAnswer": "your calculated answer",
  "providedAnswer": "the answer you were asked to verify",
  "match": true/false,
  "confidence": 0.0 to 1.0,
  "discrepancy": "explanation if answers don't match, null if they match"
}"""

    @staticmethod
    def build_grading_prompt(ocr: OcrResult | None = None) -> str:
        """
        Build the blind grading prompt.

        Args:
            ocr: OCR output to append as a reading aid, if OCR succeeded.

        Returns:
            The formatted user prompt.
        """
        prompt = """Analyze this math homework image and grade it using YOUR OWN CALCULATIONS.

You will NOT be given an answer key. Solve every problem yourself.

GRADING INSTRUCTIONS:
1. Find the student's name at the top of the page
2. For EACH math problem:
   a. READ the problem exactly as written (e.g. "6 x 7 = ?")
   b. SOLVE it yourself and show the calculation
   c. RECORD your calculated answer
   d. READ what the student wrote
   e. GRADE: correct if the student's answer matches YOUR answer

Respond with this exact JSON structure:
{
  "studentName": "detected name or null if not found",
  "nameConfidence": 0.0 to 1.0,
  "questions": [
    {
      "questionNumber": 1,
      "problemText": "the problem as written",
      "aiCalculation": "your step-by-step calculation",
      "aiAnswer": "your calculated answer",
      "studentAnswer": "what the student wrote or null if blank/unreadable",
      "isCorrect": true/false,
      "confidence": 0.0 to 1.0,
      "readabilityConfidence": 0.0 to 1.0,
      "readabilityIssue": "reading difficulties or null",
      "pointsAwarded": number,
      "pointsPossible": number
    }
  ],
  "totalScore": number,
  "totalPossible": number,
  "needsReview": true/false,
  "reviewReason": "reason or null"
}"""

        if ocr is not None and not ocr.is_empty:
            lines = [
                "",
                "",
                f"ADDITIONAL OCR DATA (confidence: {ocr.confidence * 100:.1f}%):",
            ]
            if ocr.text:
                lines.append(f"Text: {ocr.text}")
            if ocr.latex:
                lines.append(f"LaTeX: {ocr.latex}")
            lines.append("")
            lines.append(
                "Use this OCR data to help read unclear handwriting, but always verify against the actual image."
            )
            prompt += "\n".join(lines)

        return prompt

    @staticmethod
    def build_verification_prompt(
        problem_text: str,
        ai_answer: str,
        student_answer: str | None = None,
    ) -> str:
        """Generic chain-of-thought verification prompt."""
        context = f"\nStudent's answer (for context only): {student_answer}" if student_answer else ""
        return f"""VERIFICATION TASK:

Problem: {problem_text}

Answer to verify: {ai_answer}{context}

INSTRUCTIONS:
1. Solve the problem yourself, showing all steps
2. Compare YOUR answer to the "Answer to verify"
3. Report whether they match

Respond with JSON only:
{PromptBuilder._VERIFICATION_FORMAT}"""

    @staticmethod
    def build_algebra_verification_prompt(problem_text: str, ai_answer: str) -> str:
        """Verification prompt that asks for substitution back into the equation."""
        return f"""ALGEBRA VERIFICATION:

Problem: {problem_text}
Answer to verify: {ai_answer}

VERIFICATION STEPS:
1. Identify the equation or expression
2. Show each algebraic step
3. SUBSTITUTE your answer back into the original to check it
4. Compare with the provided answer

Respond with JSON only:
{PromptBuilder._VERIFICATION_FORMAT}"""

    @staticmethod
    def build_word_problem_verification_prompt(
        problem_text: str,
        ai_answer: str,
        ai_setup: str | None = None,
    ) -> str:
        """Verification prompt for word problems (setup, solve, sanity check)."""
        setup = f"\nAI's problem setup:\n{ai_setup}\n" if ai_setup else ""
        return f"""WORD PROBLEM VERIFICATION:

Problem: {problem_text}
{setup}
AI's answer: {ai_answer}

VERIFICATION STEPS:
1. UNDERSTAND what the problem is asking
2. IDENTIFY the given values and unknowns
3. SET UP the equation(s)
4. SOLVE step by step
5. CHECK the answer makes sense in context
6. COMPARE with the AI's answer

Respond with JSON only:
{PromptBuilder._VERIFICATION_FORMAT}"""

    @staticmethod
    def build_feedback_prompt(questions: tuple[QuestionResult, ...] | list[QuestionResult]) -> str:
        """
        Build the batch feedback prompt for a graded submission.

        Args:
            questions: Graded questions to write feedback for.

        Returns:
            The formatted user prompt.
        """
        formatted = "\n".join(
            f'Q{q.question_number}: Student wrote "{q.student_answer or "(blank)"}". '
            f'Correct: "{q.correct_answer}". {"CORRECT" if q.is_correct else "INCORRECT"}'
            for q in questions
        )
        return f"""Generate encouraging feedback for each question in this graded homework.

Questions:
{formatted}

Respond with JSON:
{{
  "feedback": [
    {{
      "questionNumber": 1,
      "message": "Brief feedback message"
    }}
  ],
  "overallMessage": "A brief encouraging overall message"
}}

Keep each feedback message to 1-2 sentences. Be encouraging!"""

    @staticmethod
    def get_system_prompt() -> str:
        """Get the system prompt for grading."""
        return PromptBuilder.SYSTEM_PROMPT
