from quizlive import db


QUESTION_TYPES = ('multiple-choice', 'true-false', 'short-answer')


class Quiz(db.Model):
    __tablename__ = 'quiz'
    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    status = db.Column(db.String(32), default='draft', nullable=False)  # draft, published, archived
    questions = db.relationship(
        'Question', back_populates='quiz', order_by='Question.position', cascade='all, delete-orphan'
    )

    def to_dict(self):
        return {
            'id': self.id,
            'title': self.title,
            'description': self.description,
            'status': self.status,
            'questions': [q.to_dict() for q in self.questions],
        }


class Question(db.Model):
    __tablename__ = 'question'
    id = db.Column(db.Integer, primary_key=True)
    quiz_id = db.Column(db.Integer, db.ForeignKey('quiz.id'), nullable=False, index=True)
    position = db.Column(db.Integer, nullable=False, default=0)
    text = db.Column(db.Text, nullable=False)
    type = db.Column(db.String(32), nullable=False, default='multiple-choice')
    points = db.Column(db.Integer, nullable=True)
    quiz = db.relationship('Quiz', back_populates='questions')
    answers = db.relationship(
        'Answer', back_populates='question', order_by='Answer.position', cascade='all, delete-orphan'
    )

    def to_dict(self):
        return {
            'id': self.id,
            'text': self.text,
            'type': self.type,
            'points': self.points,
            'answers': [a.to_dict() for a in self.answers],
        }


class Answer(db.Model):
    __tablename__ = 'answer'
    id = db.Column(db.Integer, primary_key=True)
    question_id = db.Column(db.Integer, db.ForeignKey('question.id'), nullable=False, index=True)
    position = db.Column(db.Integer, nullable=False, default=0)
    text = db.Column(db.String(500), nullable=False)
    correct = db.Column(db.Boolean, default=False, nullable=False)
    question = db.relationship('Question', back_populates='answers')

    def to_dict(self):
        return {'text': self.text, 'correct': self.correct}


def get_quiz_by_id(quiz_id):
    """Quiz document as the live engine consumes it, or None."""
    try:
        key = int(quiz_id)
    except (TypeError, ValueError):
        return None
    quiz = db.session.get(Quiz, key)
    return quiz.to_dict() if quiz else None


def build_quiz(title, questions, status='published', description=None):
    """Create a quiz from plain dicts (``{text, type, points, answers: [{text, correct}]}``)."""
    quiz = Quiz(title=title, description=description, status=status)
    for position, data in enumerate(questions):
        if data.get('type', 'multiple-choice') not in QUESTION_TYPES:
            raise ValueError(f"unknown question type: {data.get('type')}")
        question = Question(
            position=position,
            text=data['text'],
            type=data.get('type', 'multiple-choice'),
            points=data.get('points'),
        )
        for answer_position, answer in enumerate(data.get('answers', [])):
            question.answers.append(Answer(
                position=answer_position,
                text=answer['text'],
                correct=bool(answer.get('correct')),
            ))
        quiz.questions.append(question)
    db.session.add(quiz)
    db.session.commit()
    return quiz
