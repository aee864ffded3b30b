import os

from partyhub import create_app, socketio
from partyhub.services.quiz.rounds import get_round_machine

app = create_app()

if __name__ == '__main__':
    with app.app_context():
        # Close or regrade whatever a previous process left mid-round
        get_round_machine().recover()
    # Use SocketIO server to enable websockets in dev
    socketio.run(app, port=int(os.environ.get('PORT', '5000')), debug=True)
